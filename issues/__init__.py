"""
Issue Reports

Report intake (validation and the submission award) and the admin
status workflow that awards resolution bonuses and rolls back points
for invalid reports.
"""

from .workflow import IssueService

__all__ = ["IssueService"]
