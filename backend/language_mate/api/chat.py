"""Chat WebSocket: the presentation channel for one browser tab.

The client sends JSON commands (plain text is treated as a message to send);
the server forwards every orchestrator event as JSON. Turns run in the
background so a ``cancel`` command can arrive while one is streaming.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable
from typing import Annotated, Literal

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from language_mate.api.deps import Services
from language_mate.core.errors import InvalidMessageError, LanguageMateError, TurnInProgressError
from language_mate.schemas.messages import Attachment, UrlAttachment
from language_mate.schemas.settings import ConversationSettingsUpdate
from language_mate.services.attachments import is_valid_image_url
from language_mate.services.events import EventBus, Notification, SettingsChanged
from language_mate.services.orchestrator import TurnOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


class SendCommand(BaseModel):
    type: Literal["send"] = "send"
    content: str
    mode: Literal["full", "user_only", "chat_mate_only"] = "full"
    conversation_id: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("attachments")
    @classmethod
    def check_image_urls(cls, attachments: list[Attachment]) -> list[Attachment]:
        for attachment in attachments:
            if isinstance(attachment, UrlAttachment) and not is_valid_image_url(attachment.url):
                raise ValueError(f"Not an image URL: {attachment.url}")
        return attachments


class AskCommand(BaseModel):
    type: Literal["ask"]
    question: str
    selected_text: str | None = None


class CancelCommand(BaseModel):
    type: Literal["cancel"]


class RegenerateCommand(BaseModel):
    type: Literal["regenerate"]
    message_id: str


class ForkCommand(BaseModel):
    type: Literal["fork"]
    message_id: str


class EditCommand(BaseModel):
    type: Literal["edit"]
    message_id: str
    content: str


class DeleteCommand(BaseModel):
    type: Literal["delete"]
    message_id: str


class DeleteBelowCommand(BaseModel):
    type: Literal["delete_below"]
    message_id: str


class SettingsCommand(BaseModel):
    type: Literal["settings"]
    settings: ConversationSettingsUpdate


class LoadCommand(BaseModel):
    type: Literal["load"]
    conversation_id: str


class NewCommand(BaseModel):
    type: Literal["new"]


Command = Annotated[
    SendCommand
    | AskCommand
    | CancelCommand
    | RegenerateCommand
    | ForkCommand
    | EditCommand
    | DeleteCommand
    | DeleteBelowCommand
    | SettingsCommand
    | LoadCommand
    | NewCommand,
    Field(discriminator="type"),
]
_commands: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(raw: str) -> Command:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return SendCommand(content=raw)
    if not isinstance(data, dict):
        return SendCommand(content=raw)
    data.setdefault("type", "send")
    return _commands.validate_python(data)


async def _guarded(events: EventBus, action: Awaitable) -> None:
    """Run an orchestrator call, turning domain errors into a notification."""
    try:
        await action
    except LanguageMateError as e:
        logger.debug(f"Command failed: {e}")
        events.emit(Notification(level="error", title=e.title, description=e.user_message()))


async def _start_turn(orchestrator: TurnOrchestrator, command: SendCommand | AskCommand | RegenerateCommand) -> None:
    if isinstance(command, RegenerateCommand):
        await orchestrator.regenerate_message(command.message_id)
        return
    if isinstance(command, AskCommand):
        await orchestrator.ask_editor_mate(command.question, command.selected_text)
        return

    if command.conversation_id and command.conversation_id != orchestrator.conversation_id:
        await orchestrator.load_conversation(command.conversation_id)

    send = {
        "full": orchestrator.send_message,
        "user_only": orchestrator.send_user_only,
        "chat_mate_only": orchestrator.send_chat_mate_only,
    }[command.mode]
    await send(command.content, command.attachments)


async def _apply(orchestrator: TurnOrchestrator, events: EventBus, command: Command) -> None:
    if isinstance(command, ForkCommand):
        await orchestrator.fork_from(command.message_id)
    elif isinstance(command, EditCommand):
        await orchestrator.edit_message(command.message_id, command.content)
    elif isinstance(command, DeleteCommand):
        await orchestrator.delete_message(command.message_id)
    elif isinstance(command, DeleteBelowCommand):
        removed = await orchestrator.delete_all_below(command.message_id)
        events.emit(
            Notification(level="info", title="Deleted", description=f"Deleted {removed} message(s)")
        )
    elif isinstance(command, SettingsCommand):
        settings = await orchestrator.update_settings(command.settings)
        events.emit(SettingsChanged(settings=settings.persisted()))
    elif isinstance(command, LoadCommand):
        await orchestrator.load_conversation(command.conversation_id)
        events.emit(SettingsChanged(settings=orchestrator.settings.persisted()))
    elif isinstance(command, NewCommand):
        await orchestrator.new_conversation()


async def _forward(websocket: WebSocket, events: EventBus) -> None:
    async for event in events.consume():
        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except (WebSocketDisconnect, RuntimeError):
            break


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    await websocket.accept()
    services: Services = websocket.app.state.services
    events = EventBus()
    orchestrator = TurnOrchestrator(
        services.llm,
        services.store,
        events,
        on_conversation_update=services.titles,
    )
    forwarder = asyncio.create_task(_forward(websocket, events))
    turn: asyncio.Task | None = None

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                command = parse_command(raw)
            except ValidationError as e:
                error = InvalidMessageError(f"Unrecognized command ({e.error_count()} validation errors)")
                events.emit(Notification(level="error", title=error.title, description=str(error)))
                continue

            if isinstance(command, CancelCommand):
                orchestrator.cancel()
                continue

            # A turn task may not have reached the orchestrator yet, so check it here too
            if not isinstance(command, SettingsCommand) and turn is not None and not turn.done():
                busy = TurnInProgressError()
                events.emit(Notification(level="warning", title=busy.title, description=str(busy)))
                continue

            if isinstance(command, (SendCommand, AskCommand, RegenerateCommand)):
                turn = asyncio.create_task(_guarded(events, _start_turn(orchestrator, command)))
            else:
                await _guarded(events, _apply(orchestrator, events, command))

    except WebSocketDisconnect:
        pass
    finally:
        if turn is not None and not turn.done():
            turn.cancel()
            await asyncio.gather(turn, return_exceptions=True)
        events.close()
        await forwarder
