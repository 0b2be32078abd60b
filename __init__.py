"""EthML repository.

This repo exposes a few top-level Python packages:

- `ethml`    (coordinator server, worker agent + wire protocol)
- `compute`  (task queue, task store, predictor runner, shared models)
- `nodes`    (runnable coordinator/worker entry points)
"""

__all__ = ["compute", "ethml", "nodes"]
