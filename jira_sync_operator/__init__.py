"""
JIRA Sync Operator - job scheduling and reconciliation for issue-tracker to Git syncs.
"""

__version__ = "0.4.0"
__author__ = "JIRA Sync Team"

COMPONENT = "job-scheduler"

__all__ = ["__version__", "COMPONENT"]
