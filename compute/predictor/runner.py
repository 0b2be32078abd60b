"""
Run model scripts as subprocesses to produce predictions.

A model script lives at `<models_dir>/model_<model_id>.py`, receives the data
point as its only argument and prints JSON lines on stdout. The first object
carrying a `prediction` key is the result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections import deque
from pathlib import Path
from typing import Optional, Protocol

from compute.errors import PredictorError
from compute.models import Prediction

logger = logging.getLogger(__name__)


class Predictor(Protocol):
    async def predict(self, model_id: int, data_point: str) -> Prediction:
        ...


class SubprocessPredictor:
    def __init__(
        self,
        *,
        models_dir: Path,
        python: Path = Path(sys.executable),
        timeout_s: float = 120.0,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.models_dir = Path(models_dir)
        self.python = Path(python)
        self.timeout_s = float(timeout_s)

    def script_for(self, model_id: int) -> Path:
        return self.models_dir / f"model_{int(model_id)}.py"

    async def predict(self, model_id: int, data_point: str) -> Prediction:
        script = self.script_for(model_id)
        if not script.is_file():
            raise PredictorError(f"no model script for model_id={model_id} at {script}")

        proc = await asyncio.create_subprocess_exec(
            str(self.python),
            str(script),
            str(data_point),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise PredictorError(f"model_id={model_id} timed out after {self.timeout_s:.1f}s")

        prediction = self._parse_output(stdout.decode("utf-8", errors="replace"))
        if proc.returncode != 0:
            tail = "\n".join(deque(stderr.decode("utf-8", errors="replace").splitlines(), maxlen=20))
            raise PredictorError(f"model_id={model_id} exited with {proc.returncode}: {tail}")
        if prediction is None:
            raise PredictorError(f"model_id={model_id} produced no prediction")
        logger.debug(
            "prediction model_id=%s prediction=%s confidence=%.3f",
            model_id,
            prediction.prediction,
            prediction.confidence,
        )
        return prediction

    @staticmethod
    def _parse_output(text: str) -> Optional[Prediction]:
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and "prediction" in message:
                try:
                    confidence = float(message.get("confidence", 0.0) or 0.0)
                except (TypeError, ValueError):
                    confidence = 0.0
                return Prediction(prediction=message["prediction"], confidence=confidence)
        return None
