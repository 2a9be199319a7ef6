"""Cycle orchestration and the fetch retry state machine.

Import from submodules:
    from collector.scheduler.orchestrator import JobOrchestrator
    from collector.scheduler.retry import run_with_fetch_retry
"""

__all__: list[str] = []
