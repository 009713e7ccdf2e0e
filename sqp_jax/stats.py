"""Solver statistics: per-phase timings, call counts and the iteration log.

A fresh :class:`SolverStats` record is created for every solve and handed to
each evaluator call site, so that no timing state lives at module level.
"""

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Optional

# Phases whose time and number of calls are tracked
EVAL_PHASES = ("eval_f", "eval_grad_f", "eval_g", "eval_jac_g", "eval_h")

ITERATION_KEYS = ("inf_pr", "inf_du", "d_norm", "ls_trials", "ls_success", "obj", "reg")


def _empty_iteration_log() -> dict[str, list]:
    return {key: [] for key in ITERATION_KEYS}


@dataclass
class SolverStats:
    """Statistics gathered during one call to :meth:`SQPMethod.solve`.

    Times are wall-clock seconds measured with :func:`time.perf_counter`.
    An evaluation that raises is neither timed nor counted.
    """

    t_eval_f: float = 0.0
    t_eval_grad_f: float = 0.0
    t_eval_g: float = 0.0
    t_eval_jac_g: float = 0.0
    t_eval_h: float = 0.0
    t_mainloop: float = 0.0
    t_callback_fun: float = 0.0
    t_callback_prepare: float = 0.0

    n_eval_f: int = 0
    n_eval_grad_f: int = 0
    n_eval_g: int = 0
    n_eval_jac_g: int = 0
    n_eval_h: int = 0

    iter_count: int = 0
    return_status: Optional[str] = None
    iterations: dict[str, list] = field(default_factory=_empty_iteration_log)

    @contextmanager
    def timed(self, phase: str, count: bool = True) -> Iterator[None]:
        """Add the time spent in the ``with`` body to ``t_<phase>``.

        When ``count`` is set, ``n_<phase>`` is incremented as well.
        """
        start = time.perf_counter()
        yield
        elapsed = time.perf_counter() - start
        setattr(self, f"t_{phase}", getattr(self, f"t_{phase}") + elapsed)
        if count:
            setattr(self, f"n_{phase}", getattr(self, f"n_{phase}") + 1)

    def record_iteration(
        self,
        inf_pr: float,
        inf_du: float,
        d_norm: float,
        ls_trials: int,
        ls_success: bool,
        obj: float,
        reg: float,
    ) -> None:
        """Append one row to the per-iteration log."""
        row = {
            "inf_pr": inf_pr,
            "inf_du": inf_du,
            "d_norm": d_norm,
            "ls_trials": ls_trials,
            "ls_success": ls_success,
            "obj": obj,
            "reg": reg,
        }
        for key, value in row.items():
            self.iterations[key].append(value)

    def average_ms(self, phase: str) -> Optional[float]:
        """Average time per call of ``phase`` in milliseconds, if called."""
        n_calls = getattr(self, f"n_{phase}")
        if n_calls == 0:
            return None
        return getattr(self, f"t_{phase}") / n_calls * 1000.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
