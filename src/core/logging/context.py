"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_cycle_id: ContextVar[str] = ContextVar("cycle_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_report_type: ContextVar[str] = ContextVar("report_type", default="")


def set_log_context(
    cycle_id: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    report_type: Optional[str] = None,
) -> None:
    if cycle_id is not None:
        _cycle_id.set(cycle_id)
    if stage is not None:
        _stage_name.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if report_type is not None:
        _report_type.set(report_type)


def get_log_context() -> Dict[str, str]:
    return {
        "cycle_id": _cycle_id.get(),
        "stage": _stage_name.get(),
        "worker_id": _worker_id.get(),
        "report_type": _report_type.get(),
    }


def clear_log_context() -> None:
    _cycle_id.set("")
    _stage_name.set("")
    _worker_id.set("")
    _report_type.set("")
