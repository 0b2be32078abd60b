"""Predictor collaborators invoked by worker agents."""

from .runner import Predictor, SubprocessPredictor

__all__ = ["Predictor", "SubprocessPredictor"]
