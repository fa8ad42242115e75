"""
Processing job lifecycle.

  state.py    JobStatus / JobType and the guarded transition table
  service.py  ProcessingJobService: persistence of job rows
"""

from studydocs.jobs.state import JobStatus, JobType, can_transition, check_transition

__all__ = ["JobStatus", "JobType", "can_transition", "check_transition"]
