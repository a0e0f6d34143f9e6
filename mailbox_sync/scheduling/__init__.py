"""
Background job scheduling
"""

from .jobs import JobHandler, JobScheduler, JobSchedulingError, ScheduledJob

__all__ = ["JobHandler", "JobScheduler", "JobSchedulingError", "ScheduledJob"]
