"""
Workflow Watcher

Watches the append-only workflow log of an AI coding assistant session,
detects unhealthy workflow patterns and queues corrective tasks.

- LogReader: incremental, offset-based reads of the workflow log
- WorkflowAnalyzer: 16 heuristic detectors over the entry sequence
- InterventionGenerator: issue -> prioritized task, deduplicated
- QueueManager: bounded, persistent priority task queue
- ComplianceMonitor: Iron Law checks (TDD, branch, dev docs)
- WatcherSupervisor: runs the loops and notifies observers
"""

__version__ = "1.0.0"
