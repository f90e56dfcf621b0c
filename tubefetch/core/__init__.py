"""
Core session orchestration engine.

This package contains the primary logic. The `ExtractionEngine` acts as the
facade used by the transport layer, the `BatchOrchestrator` drives a session's
items one at a time, and the `ExtractionWorker` runs each individual item.
The `ProcessRegistry` and `CancellationController` keep cancellation clean.
"""
