"""
Wire payloads for realtime messages.

Keys are camelCase because they are consumed directly by browser clients.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from kb_fanout.models.subscription import Subscription
from kb_fanout.schemas.entities import (
    Collection,
    Comment,
    Document,
    FileOperation,
    Group,
    GroupMembership,
    GroupUser,
    InAppNotification,
    Pin,
    Star,
    Team,
    User,
    UserMembership,
)


def _id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def present_document(document: Document) -> dict[str, Any]:
    return {
        "id": _id(document.id),
        "collectionId": _id(document.collection_id),
        "title": document.title,
        "createdById": _id(document.created_by_id),
        "lastModifiedById": _id(document.last_modified_by_id),
        "collaboratorIds": [_id(u) for u in document.collaborator_ids],
        "publishedAt": _ts(document.published_at),
        "archivedAt": _ts(document.archived_at),
        "deletedAt": _ts(document.deleted_at),
        "updatedAt": _ts(document.updated_at),
    }


def present_collection(collection: Collection) -> dict[str, Any]:
    return {
        "id": _id(collection.id),
        "name": collection.name,
        "permission": collection.permission.value if collection.permission else None,
        "index": collection.index,
        "createdById": _id(collection.created_by_id),
        "updatedAt": _ts(collection.updated_at),
        "deletedAt": _ts(collection.deleted_at),
    }


def present_membership(membership: UserMembership) -> dict[str, Any]:
    return {
        "id": _id(membership.id),
        "userId": _id(membership.user_id),
        "collectionId": _id(membership.collection_id),
        "documentId": _id(membership.document_id),
        "permission": membership.permission.value,
    }


def present_group_membership(membership: GroupMembership) -> dict[str, Any]:
    return {
        "id": _id(membership.id),
        "groupId": _id(membership.group_id),
        "collectionId": _id(membership.collection_id),
        "documentId": _id(membership.document_id),
        "permission": membership.permission.value,
    }


def present_group(group: Group, member_count: int = 0) -> dict[str, Any]:
    return {
        "id": _id(group.id),
        "name": group.name,
        "memberCount": member_count,
    }


def present_group_user(group_user: GroupUser) -> dict[str, Any]:
    return {
        "id": f"{group_user.user_id}-{group_user.group_id}",
        "userId": _id(group_user.user_id),
        "groupId": _id(group_user.group_id),
    }


def present_comment(comment: Comment) -> dict[str, Any]:
    return {
        "id": _id(comment.id),
        "documentId": _id(comment.document_id),
        "parentCommentId": _id(comment.parent_comment_id),
        "createdById": _id(comment.created_by_id),
        "data": comment.data,
        "createdAt": _ts(comment.created_at),
        "updatedAt": _ts(comment.updated_at),
    }


def present_pin(pin: Pin) -> dict[str, Any]:
    return {
        "id": _id(pin.id),
        "documentId": _id(pin.document_id),
        "collectionId": _id(pin.collection_id),
        "index": pin.index,
    }


def present_star(star: Star) -> dict[str, Any]:
    return {
        "id": _id(star.id),
        "documentId": _id(star.document_id),
        "collectionId": _id(star.collection_id),
        "index": star.index,
    }


def present_file_operation(file_operation: FileOperation) -> dict[str, Any]:
    return {
        "id": _id(file_operation.id),
        "type": file_operation.type,
        "state": file_operation.state,
        "name": file_operation.name,
        "collectionId": _id(file_operation.collection_id),
    }


def present_notification(notification: InAppNotification) -> dict[str, Any]:
    return {
        "id": _id(notification.id),
        "event": notification.event,
        "actorId": _id(notification.actor_id),
        "documentId": _id(notification.document_id),
        "collectionId": _id(notification.collection_id),
        "viewedAt": _ts(notification.viewed_at),
        "createdAt": _ts(notification.created_at),
    }


def present_subscription(subscription: Subscription) -> dict[str, Any]:
    return {
        "id": _id(subscription.id),
        "userId": _id(subscription.user_id),
        "documentId": _id(subscription.document_id),
        "event": subscription.event,
        "createdAt": _ts(subscription.created_at),
    }


def present_team(team: Team) -> dict[str, Any]:
    return {"id": _id(team.id), "name": team.name, "url": team.url}


def present_user(user: User, include_details: bool = False) -> dict[str, Any]:
    data = {
        "id": _id(user.id),
        "name": user.name,
        "avatarUrl": user.avatar_url,
        "role": user.role.value,
        "isSuspended": user.is_suspended,
        "lastActiveAt": _ts(user.last_active_at),
    }
    if include_details:
        data["email"] = user.email
    return data
