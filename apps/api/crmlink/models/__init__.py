from __future__ import annotations

from crmlink.models.base import Base as Base  # noqa: F401
from crmlink.models.notifications import Notification  # noqa: F401
from crmlink.models.preferences import AppConfigValue, UserPreference  # noqa: F401
