from .notification import Notification
from .payment_event import PaymentEvent
from .profile import Profile
from .project import PLANS, PROJECT_STATUSES, Project
from .task import ProjectTask

__all__ = [
    "Notification",
    "PaymentEvent",
    "PLANS",
    "PROJECT_STATUSES",
    "Profile",
    "Project",
    "ProjectTask",
]
