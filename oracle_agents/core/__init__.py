"""Role runtime and client-side task lifecycle."""

from .base_role import BaseRole
from .lifecycle import LifecycleState, TaskRecord, InFlightGuard, TaskLifecycleController
