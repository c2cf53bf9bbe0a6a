"""Featureflow - phase orchestration for autonomous feature delivery.

Drives features through specify, plan, tasks, implement and complete phases
using an external coding agent, gates each phase with quality checks, and
learns reusable lessons from review feedback.
"""

__version__ = "0.1.0"
