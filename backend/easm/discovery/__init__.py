from .routes import discovery_bp  # noqa: F401
from .scheduler import JobScheduler, SchedulerSettings  # noqa: F401
