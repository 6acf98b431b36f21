"""Workflow domain concepts.

This package holds:
- the session status state machine and the ordered pipeline steps
- the deadline controller and cancellation signal
- the pipeline orchestrator and the default generation steps

The intent is to make long-running execution restartable, inspectable, and
deterministic in its control flow.
"""

__all__: list[str] = []
