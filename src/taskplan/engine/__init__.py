"""Plan execution engine.

The orchestrator owns every mutation of a running plan. Tool execution,
tool and recovery-strategy selection, checkpoint approval and plan revision
are collaborators behind the protocols in `collaborators.py`; the package
ships a rule-based decision service and nothing else on that side.
"""
