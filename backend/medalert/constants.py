from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"


class UserRole(str, Enum):
    USER = "user"
    RESPONSE_TEAM = "response_team"
    ADMIN = "admin"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class AmbulanceStatus(str, Enum):
    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    RETURNING = "returning"
    MAINTENANCE = "maintenance"


# Alerts in these states still hold their unit.
OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.IN_PROGRESS.value)

# Roles allowed to mutate alert and unit state; also the chat agent pool.
DISPATCH_ROLES = frozenset({UserRole.RESPONSE_TEAM, UserRole.ADMIN})
