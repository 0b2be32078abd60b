"""Runnable coordinator and worker entry points."""
