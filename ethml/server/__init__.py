"""Coordinator side: worker registry, dispatch, settlement and API."""
