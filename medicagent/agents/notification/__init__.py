from .agent import NotificationAgent
from .policy import PolicyContext, evaluate_policy

__all__ = ["NotificationAgent", "PolicyContext", "evaluate_policy"]
