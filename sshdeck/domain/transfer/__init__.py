"""
SFTP transfers: wizard, browsing, planning and execution
"""
from .browser import DirectoryBrowser, Listing, LocalBrowser, RemoteBrowser, browser_for
from .engine import ProgressReporter, TransferEngine
from .models import (
    CancellationToken,
    Side,
    TaskStatus,
    TransferConfig,
    TransferDirection,
    TransferJob,
    TransferRequest,
)
from .plan import PlanEntry, TransferPlan, plan_download, plan_upload
from .wizard import WizardState, WizardStep, advance, browser_side, start, to_request

__all__ = [
    "DirectoryBrowser",
    "Listing",
    "LocalBrowser",
    "RemoteBrowser",
    "browser_for",
    "ProgressReporter",
    "TransferEngine",
    "CancellationToken",
    "Side",
    "TaskStatus",
    "TransferConfig",
    "TransferDirection",
    "TransferJob",
    "TransferRequest",
    "PlanEntry",
    "TransferPlan",
    "plan_download",
    "plan_upload",
    "WizardState",
    "WizardStep",
    "advance",
    "browser_side",
    "start",
    "to_request",
]
