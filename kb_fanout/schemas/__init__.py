from .entities import (  # noqa: F401
    Collection,
    CollectionPermission,
    Comment,
    Document,
    FileOperation,
    Group,
    GroupMembership,
    GroupUser,
    InAppNotification,
    MembershipPermission,
    Pin,
    Star,
    Team,
    User,
    UserMembership,
    UserRole,
    View,
)
from .events import ControlAction, EventIn, EventName, EventRecord  # noqa: F401
