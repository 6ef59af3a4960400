"""
Background jobs for the lifecycle engine.

Periodic tasks, the job manager that owns them, and the alert
forwarding side channel.
"""
from .periodic_task import PeriodicTask
from .job_manager import BackgroundJobManager, CHECK_KINDS
from .alert_forwarder import AlertForwarder
