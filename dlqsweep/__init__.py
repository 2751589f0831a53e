"""Dead-letter sweep: locate, drain and reconcile dead-letter sub-queues."""

__version__ = "0.1.0"
