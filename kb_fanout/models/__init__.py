# SQLModel definitions, imported here so metadata is populated for create_all.
from .base import JSONType, UUIDMixin, TimestampMixin  # noqa: F401
from .event import Event  # noqa: F401
from .subscription import Subscription  # noqa: F401
from .notification_setting import NotificationSetting  # noqa: F401
from .notification import Notification  # noqa: F401
