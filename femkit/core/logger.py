"""Structured run logging: a rotating application log plus JSONL stage records."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

RUNS_FILE = "runs.jsonl"


class RunLogger:
    """Per-analysis log sink.

    ``app.log`` receives human-readable lines (rotated at 10 MB, five
    backups); ``runs.jsonl`` receives one JSON object per event with a
    ``run_id`` and an ``event_type`` of ``stage.completed``,
    ``stage.failed`` or ``solve.completed``.
    """

    def __init__(self, log_dir: str = "data/logs", level: str = "INFO"):
        self._log_dir = log_dir
        os.makedirs(log_dir, exist_ok=True)
        # one logger per directory so repeated instances share a single handler
        self._app_logger = logging.getLogger("femkit.run." + os.path.abspath(log_dir))
        if not self._app_logger.handlers:
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            handler.setFormatter(
                logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
            )
            self._app_logger.addHandler(handler)
            self._app_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    def close(self) -> None:
        """Detach and close the ``app.log`` handlers."""
        for handler in list(self._app_logger.handlers):
            self._app_logger.removeHandler(handler)
            handler.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def app(self) -> logging.Logger:
        return self._app_logger

    @property
    def log_dir(self) -> str:
        return self._log_dir

    def _emit(self, run_id: str, event_type: str, **fields) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            "event_type": event_type,
            **fields,
        }
        with open(os.path.join(self._log_dir, RUNS_FILE), "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def log_stage(
        self,
        run_id: str,
        stage: str,
        elapsed_s: float,
        data: Optional[dict] = None,
    ) -> None:
        """Record one pipeline stage (dof numbering, sparsity, assembly, ...)."""
        self._emit(run_id, "stage.completed", stage=stage, elapsed_s=elapsed_s,
                   data=data or {})
        self._app_logger.info("[%s] %s finished in %.3fs", run_id, stage, elapsed_s)

    def log_failure(self, run_id: str, stage: str, error: BaseException) -> None:
        self._emit(run_id, "stage.failed", stage=stage,
                   error_type=type(error).__name__, message=str(error))
        self._app_logger.error("[%s] %s failed: %s", run_id, stage, error)

    def log_solve(
        self,
        run_id: str,
        solver_name: str,
        n_dof: int,
        iterations: int,
        residual_norm: float,
        elapsed_s: float,
    ) -> None:
        self._emit(run_id, "solve.completed", solver=solver_name, n_dof=n_dof,
                   iterations=iterations, residual_norm=residual_norm,
                   elapsed_s=elapsed_s)
        self._app_logger.info(
            "[%s] %s solve: %d DOFs, %d iterations, residual %.3e",
            run_id, solver_name, n_dof, iterations, residual_norm,
        )
