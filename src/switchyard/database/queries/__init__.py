"""Database query functions for Switchyard.

This module provides async query functions for:
- Task CRUD, capacity counting and compare-and-set assignment
- Audit event recording
- Channels, documents, messages and inbox delivery
"""

from switchyard.database.queries.event import list_events, record_event
from switchyard.database.queries.message import (
    create_channel,
    create_document,
    find_channel_by_name,
    get_channel,
    get_document,
    get_message,
    list_inbox,
    mark_inbox_read,
    send_message,
)
from switchyard.database.queries.task import (
    compare_and_set_assignee,
    count_active_tasks_for_agent,
    create_task,
    get_task,
    get_tasks,
    list_tasks,
    update_task,
)

__all__ = [
    # Task queries
    "create_task",
    "get_task",
    "get_tasks",
    "list_tasks",
    "update_task",
    "count_active_tasks_for_agent",
    "compare_and_set_assignee",
    # Event queries
    "record_event",
    "list_events",
    # Messaging queries
    "create_channel",
    "get_channel",
    "find_channel_by_name",
    "create_document",
    "get_document",
    "send_message",
    "get_message",
    "list_inbox",
    "mark_inbox_read",
]
