"""
Relay process supervision subsystem.

This package provides the pieces that keep external ffmpeg processes alive:
- DiagnosticsParser: turns ffmpeg stderr into typed events
- RestartPolicy: classifies exits and computes backoff
- ProcessSupervisor: owns one subprocess and its restart lifecycle
"""

from relay.supervisor.diagnostics import DiagnosticEvent, DiagnosticsParser, ErrorCategory, EventKind
from relay.supervisor.process_supervisor import ProcessState, ProcessStats, ProcessSupervisor
from relay.supervisor.restart_policy import ActionKind, RestartAction, RestartPolicy

__all__ = [
    "ActionKind",
    "DiagnosticEvent",
    "DiagnosticsParser",
    "ErrorCategory",
    "EventKind",
    "ProcessState",
    "ProcessStats",
    "ProcessSupervisor",
    "RestartAction",
    "RestartPolicy",
]
