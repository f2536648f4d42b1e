"""
Views built on the sync core: multi-table dashboards and
presentation policies that react to change notifications.
"""

from .dashboard import DashboardSummary, LiveDashboard, Perspective, summarize
from .policies import ReadReceiptPolicy

__all__ = [
    "DashboardSummary",
    "LiveDashboard",
    "Perspective",
    "ReadReceiptPolicy",
    "summarize",
]
