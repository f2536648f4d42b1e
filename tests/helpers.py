"""
Small helpers shared by tests.
"""

import asyncio


async def spin(turns: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(turns):
        await asyncio.sleep(0)


def message(message_id, client_id="c1", content="hi", created_at="2024-01-01T00:00:00", **extra):
    """A messages row."""
    return {
        "message_id": message_id,
        "client_id": client_id,
        "content": content,
        "created_at": created_at,
        **extra,
    }


def task(task_id, client_id="c1", status="pending", created_at="2024-01-01T00:00:00", **extra):
    """A tasks row."""
    return {
        "id": task_id,
        "client_id": client_id,
        "status": status,
        "created_at": created_at,
        **extra,
    }
