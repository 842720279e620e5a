"""Chat WebSocket - one ConversationRequestCoordinator per connection.

Client commands (JSON):
    {"type": "send", "content": "...", "image_url": "..."}
    {"type": "switch_subject", "subject_id": "..."}
    {"type": "open_conversation", "conversation_id": "..."}
    {"type": "new_conversation"}
    {"type": "delete_conversation", "conversation_id": "..."}
    {"type": "status"}

A plain text frame is treated as a send. Sends run as tasks so that switch
commands are handled while a reply is still pending. Server events are the
coordinator's notifications, forwarded in order.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from healthchat.core.database import engine
from healthchat.services.chat.coordinator import ConversationRequestCoordinator
from healthchat.services.functions import get_functions_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket, user_id: str | None = None, subject_id: str | None = None):
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    events: asyncio.Queue[dict] = asyncio.Queue()
    coordinator = ConversationRequestCoordinator.from_settings(
        user_id,
        functions=get_functions_client(),
        engine=engine,
        notify=events.put_nowait,
    )
    if subject_id:
        coordinator.switch_subject(subject_id)

    writer = asyncio.create_task(_forward_events(websocket, events))
    background: set[asyncio.Task] = set()
    _track(background, asyncio.create_task(coordinator.run_startup_migration()))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
                if not isinstance(data, dict):
                    raise TypeError
            except (json.JSONDecodeError, TypeError):
                data = {"type": "send", "content": raw}

            command = data.get("type", "send")
            if command == "send":
                _track(background, asyncio.create_task(
                    coordinator.send_message(data.get("content"), data.get("image_url"))
                ))
            elif command == "switch_subject":
                coordinator.switch_subject(data.get("subject_id"))
            elif command == "open_conversation" and data.get("conversation_id"):
                coordinator.open_conversation(str(data["conversation_id"]))
            elif command == "new_conversation":
                coordinator.start_new_conversation()
            elif command == "delete_conversation" and data.get("conversation_id"):
                coordinator.delete_conversation(str(data["conversation_id"]))
            elif command == "status":
                decision = coordinator.send_status()
                events.put_nowait({
                    "type": "status",
                    "allowed": decision.allowed,
                    "reason": decision.reason,
                    "wait_seconds": decision.wait_seconds,
                    "subject_id": coordinator.subject_id,
                    "conversation_id": coordinator.conversation_id,
                })
            else:
                events.put_nowait({"type": "error", "kind": "protocol", "message": f"Unknown command: {command}"})

    except WebSocketDisconnect:
        pass
    finally:
        for task in background:
            task.cancel()
        await coordinator.aclose()
        writer.cancel()
        await asyncio.gather(writer, *background, return_exceptions=True)


async def _forward_events(websocket: WebSocket, events: asyncio.Queue) -> None:
    while True:
        event = await events.get()
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            return


def _track(tasks: set[asyncio.Task], task: asyncio.Task) -> None:
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Chat task failed", exc_info=task.exception())
