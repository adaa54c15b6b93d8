"""Application module for NetGuard.

Contains the main application components:
- EventBus: Internal event communication
- NetGuardController: External operations and scheduled jobs
- Scheduler: Fixed-interval background jobs
"""

from app.controller import NetGuardController, NetworkOverview, NetworkStats
from app.dependencies import AppDependencies, create_dependencies
from app.events import Event, EventBus, EventType
from app.scheduler import IntervalTimer, Scheduler

__all__ = [
    "NetGuardController",
    "NetworkOverview",
    "NetworkStats",
    "AppDependencies",
    "Event",
    "EventBus",
    "EventType",
    "IntervalTimer",
    "Scheduler",
    "create_dependencies",
]
