from compliance_monitor.sources.base import ChangeSource
from compliance_monitor.sources.courtlistener import CaseLawSource
from compliance_monitor.sources.legiscan import BillSource

__all__ = [
    "BillSource",
    "CaseLawSource",
    "ChangeSource",
]
