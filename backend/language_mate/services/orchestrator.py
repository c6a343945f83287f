"""Turn orchestration - fans one learner action out into Chat Mate and Editor Mate calls.

A full turn, triggered by ``send_message``:

1. create the conversation lazily, with the settings in effect at send time
2. persist the learner's message (inline image URLs become attachments)
3. Editor Mate comments on the learner's message (full history)
4. once 3 is issued, Chat Mate replies (user/chat-mate history only)
5. after 4 finishes, Editor Mate comments on the Chat Mate reply

``ask_editor_mate`` runs a side question through the same machinery without
touching the chat.

Each AI message streams into its own record under a temporary id and is
swapped for the persisted record when its call completes. Every turn runs in
one asyncio task, so ``cancel()`` reaches every request issued for it.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from enum import Enum

from language_mate.core.errors import (
    ConfigurationError,
    ConversationNotFoundError,
    InvalidMessageError,
    LanguageMateError,
    MessageNotFoundError,
    TurnCancelledError,
    TurnInProgressError,
)
from language_mate.schemas.messages import (
    Attachment,
    ConversationInfo,
    Message,
    MessageCreate,
    MessageMetadata,
    MessageType,
    MessageUpdate,
    new_temporary_id,
)
from language_mate.schemas.settings import ConversationSettings, ConversationSettingsUpdate
from language_mate.services.attachments import extract_image_urls
from language_mate.services.events import (
    ConversationCreated,
    ConversationUpdated,
    EditorAnswer,
    EventBus,
    MessagesSnapshot,
    MessageUpdated,
    Notification,
    TurnSettled,
    TurnStateChanged,
)
from language_mate.services.history import chat_mate_history, flatten_history
from language_mate.services.llm.base import (
    BaseLLMProvider,
    ChatMessage,
    CompletionRequest,
    CompletionStream,
)
from language_mate.services.llm.streaming import StreamDecoder
from language_mate.services.prompts.builder import PromptVariables, build_prompt
from language_mate.services.store import ConversationStore
from language_mate.services.titles import placeholder_title

logger = logging.getLogger(__name__)

ConversationUpdateHook = Callable[[str, list[Message], ConversationSettings], Awaitable[str | None]]
DeltaCallback = Callable[[str, str], None]


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_CONVERSATION = "awaiting_conversation"
    EDITOR_USER_COMMENT = "editor_user_comment"
    CHAT_MATE_RESPONSE = "chat_mate_response"
    EDITOR_CHAT_MATE_COMMENT = "editor_chat_mate_comment"
    EDITOR_ANSWER = "editor_answer"
    SETTLED = "settled"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_REGENERATION_STATES = {
    "chat-mate-response": TurnState.CHAT_MATE_RESPONSE,
    "editor-mate-user-comment": TurnState.EDITOR_USER_COMMENT,
    "editor-mate-chatmate-comment": TurnState.EDITOR_CHAT_MATE_COMMENT,
}


def _is_settled(message: Message) -> bool:
    return not message.is_streaming and not message.is_temporary


class TurnOrchestrator:
    """Owns the message list of the current conversation and every turn run on it.

    All mutation happens on the event loop; the list is only ever appended to
    or replaced by id, so interleaved streams need no locking.
    """

    def __init__(
        self,
        llm: BaseLLMProvider,
        store: ConversationStore,
        events: EventBus,
        settings: ConversationSettings | None = None,
        on_conversation_update: ConversationUpdateHook | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._llm = llm
        self._store = store
        self._events = events
        self._on_conversation_update = on_conversation_update
        self._clock = clock

        self.settings = settings or ConversationSettings()
        self.conversation_id: str | None = None
        self.state = TurnState.IDLE
        self._messages: list[Message] = []
        self._writers: set[str] = set()
        self._turn: asyncio.Task | None = None
        self._turn_settings = self.settings

    # --- message list ---

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_busy(self) -> bool:
        return self._turn is not None and not self._turn.done()

    def _index(self, message_id: str) -> int:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        raise MessageNotFoundError(message_id)

    def _get(self, message_id: str) -> Message:
        return self._messages[self._index(message_id)]

    def _publish(self) -> None:
        self._events.emit(MessagesSnapshot(conversation_id=self.conversation_id, messages=self.messages))

    def _append(self, message: Message) -> None:
        self._messages.append(message)
        self._publish()

    def _replace(self, message_id: str, message: Message) -> None:
        self._messages[self._index(message_id)] = message
        self._publish()

    def _remove_where(self, predicate: Callable[[Message], bool]) -> int:
        kept = [m for m in self._messages if not predicate(m)]
        removed = len(self._messages) - len(kept)
        if removed:
            self._messages = kept
            self._publish()
        return removed

    def _apply_delta(self, message_id: str, channel: str, delta: str) -> None:
        index = self._index(message_id)
        message = self._messages[index]
        if channel == "content":
            message = message.model_copy(update={"content": message.content + delta})
        else:
            message = message.model_copy(update={"reasoning": (message.reasoning or "") + delta})
        self._messages[index] = message
        self._events.emit(MessageUpdated(message_id=message_id, channel=channel, delta=delta))

    def _settled_before(self, message_id: str) -> list[Message]:
        return [m for m in self._messages[: self._index(message_id)] if _is_settled(m)]

    def _set_state(self, state: TurnState) -> None:
        self.state = state
        self._events.emit(TurnStateChanged(state=state.value))

    def _notify(self, level: str, title: str, description: str) -> None:
        self._events.emit(Notification(level=level, title=title, description=description))

    # --- conversation lifecycle ---

    async def new_conversation(self) -> None:
        """Start a blank chat. The conversation itself is created on the first send."""
        if self.is_busy:
            raise TurnInProgressError()
        self.conversation_id = None
        self._messages = []
        self._publish()

    async def load_conversation(self, conversation_id: str) -> ConversationInfo:
        if self.is_busy:
            raise TurnInProgressError()
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        stored = await self._store.get_conversation_settings(conversation_id)
        if stored:
            self.settings = ConversationSettings.model_validate({**stored, "api_key": self.settings.api_key})
        else:
            self.settings = self.settings.model_copy(update={"target_language": conversation.language})

        self.conversation_id = conversation.id
        self._messages = await self._store.get_messages(conversation_id)
        self._publish()
        return conversation

    async def update_settings(self, update: ConversationSettingsUpdate) -> ConversationSettings:
        """Takes effect for the next turn; a running turn keeps the settings it started with."""
        self.settings = update.apply(self.settings)
        if self.conversation_id is not None:
            await self._store.update_conversation_settings(self.conversation_id, self.settings.persisted())
        return self.settings

    async def _ensure_conversation(self, settings: ConversationSettings) -> str:
        if self.conversation_id is not None:
            return self.conversation_id

        self._set_state(TurnState.AWAITING_CONVERSATION)
        conversation = await self._store.create_conversation(
            language=settings.target_language,
            title=placeholder_title(settings.target_language),
            model=settings.model,
            chat_mate_prompt=settings.chat_mate_personality,
            editor_mate_prompt=settings.editor_mate_personality,
        )
        await self._store.update_conversation_settings(conversation.id, settings.persisted())
        self.conversation_id = conversation.id
        self._events.emit(ConversationCreated(conversation=conversation))
        logger.info(f"Created conversation {conversation.id} for {settings.target_language}")
        return conversation.id

    # --- turns ---

    async def send_message(self, text: str, attachments: Sequence[Attachment] = ()) -> TurnOutcome:
        """Full turn: Editor Mate on the learner, Chat Mate reply, Editor Mate on the reply."""
        self._check_submission(text, attachments)

        async def turn() -> None:
            user_message, prior = await self._submit(text, attachments, "user")

            editor_history = flatten_history(prior)
            issued = asyncio.Event()
            self._set_state(TurnState.EDITOR_USER_COMMENT)
            editor_task = asyncio.create_task(
                self._generate(
                    "editor-mate-user-comment",
                    "editor-mate",
                    source=user_message,
                    history=editor_history,
                    parent_id=user_message.id,
                    issued=issued,
                )
            )
            chat_task: asyncio.Task | None = None
            try:
                await issued.wait()
                if editor_task.done() and editor_task.exception() is not None:
                    raise editor_task.exception()

                self._set_state(TurnState.CHAT_MATE_RESPONSE)
                chat_task = asyncio.create_task(
                    self._generate(
                        "chat-mate-response",
                        "chat-mate",
                        source=user_message,
                        history=chat_mate_history(prior),
                        parent_id=None,
                    )
                )
                # A failing call lets its sibling finish and persist before the turn aborts
                results = await asyncio.gather(editor_task, chat_task, return_exceptions=True)
            finally:
                for task in (editor_task, chat_task):
                    if task is not None and not task.done():
                        task.cancel()
                        await asyncio.gather(task, return_exceptions=True)

            for result in results:
                if isinstance(result, BaseException):
                    raise result

            chat_mate_message = results[1]
            self._set_state(TurnState.EDITOR_CHAT_MATE_COMMENT)
            await self._generate(
                "editor-mate-chatmate-comment",
                "editor-mate",
                source=chat_mate_message,
                history=flatten_history([*prior, user_message]),
                parent_id=chat_mate_message.id,
            )

        return await self._run_turn("full turn", turn)

    async def send_user_only(self, text: str, attachments: Sequence[Attachment] = ()) -> TurnOutcome:
        """Send as the learner and get Editor Mate feedback, without a Chat Mate reply."""
        self._check_submission(text, attachments)

        async def turn() -> None:
            user_message, prior = await self._submit(text, attachments, "user")
            self._set_state(TurnState.EDITOR_USER_COMMENT)
            await self._generate(
                "editor-mate-user-comment",
                "editor-mate",
                source=user_message,
                history=flatten_history(prior),
                parent_id=user_message.id,
            )

        return await self._run_turn("learner-only turn", turn)

    async def send_chat_mate_only(self, text: str, attachments: Sequence[Attachment] = ()) -> TurnOutcome:
        """Write the Chat Mate's line by hand and get Editor Mate's notes on it."""
        self._check_submission(text, attachments)

        async def turn() -> None:
            chat_mate_message, prior = await self._submit(text, attachments, "chat-mate")
            self._set_state(TurnState.EDITOR_CHAT_MATE_COMMENT)
            await self._generate(
                "editor-mate-chatmate-comment",
                "editor-mate",
                source=chat_mate_message,
                history=flatten_history(prior),
                parent_id=chat_mate_message.id,
            )

        return await self._run_turn("chat-mate-only turn", turn)

    async def ask_editor_mate(self, question: str, selected_text: str | None = None) -> str | None:
        """Ask Editor Mate a side question, optionally about a piece of selected text.

        Editor Mate sees the whole settled conversation. The answer streams as
        ``message_updated`` events for a one-off id, then arrives as an
        ``EditorAnswer`` event; it is never added to the chat or persisted.
        Returns the answer, or None when the call was cancelled or failed.
        """
        self._require_target_language()
        question = question.strip()
        if not question:
            raise InvalidMessageError("Cannot ask an empty question")

        selected = selected_text.strip() if selected_text else None
        if selected:
            prompt = f'The user has selected this text: "{selected}". Answer their question about it: {question}'
        else:
            prompt = question
        history = flatten_history(m for m in self._messages if _is_settled(m))
        ask_id = new_temporary_id()
        source = Message(id=ask_id, type="user", content=prompt)
        answers: list[str] = []

        def forward(channel: str, delta: str) -> None:
            self._events.emit(MessageUpdated(message_id=ask_id, channel=channel, delta=delta))

        async def turn() -> None:
            self._set_state(TurnState.EDITOR_ANSWER)
            content, reasoning, metadata = await self._complete(
                ask_id, "editor-mate-response", source, history, on_delta=forward
            )
            answers.append(content)
            self._events.emit(
                EditorAnswer(
                    ask_id=ask_id,
                    question=question,
                    selected_text=selected,
                    content=content,
                    reasoning=reasoning,
                    metadata=metadata,
                )
            )

        outcome = await self._run_turn("editor question", turn, persistent=False)
        return answers[0] if outcome == TurnOutcome.COMPLETED else None

    async def regenerate_message(self, message_id: str) -> TurnOutcome:
        """Re-run one AI message in place, keeping its id."""
        target = self._get(message_id)
        if target.type == "user":
            raise InvalidMessageError("Only Chat Mate and Editor Mate messages can be regenerated")
        if not _is_settled(target):
            raise InvalidMessageError("This message is still being generated")

        template_key, source = self._regeneration_source(target)
        history_messages = self._settled_before(target.id)
        if template_key == "chat-mate-response":
            history = chat_mate_history(history_messages)
        else:
            history = flatten_history(history_messages)

        pending = target.model_copy(
            update={"id": new_temporary_id(), "content": "", "reasoning": None, "is_streaming": True}
        )

        async def turn() -> None:
            self._replace(target.id, pending)
            self._set_state(_REGENERATION_STATES[template_key])
            content, reasoning, metadata = await self._complete(pending.id, template_key, source, history)
            updated = await self._store.update_message(
                target.id, MessageUpdate(content=content, reasoning=reasoning or "", metadata=metadata)
            )
            self._replace(pending.id, updated)

        def restore() -> None:
            if any(m.id == pending.id for m in self._messages):
                self._replace(pending.id, target)

        return await self._run_turn(f"regeneration of message {target.id}", turn, on_abort=restore)

    def _regeneration_source(self, target: Message) -> tuple[str, Message]:
        """Pick the prompt template and the message the regenerated reply responds to."""
        index = self._index(target.id)
        if target.type == "chat-mate":
            for m in reversed(self._messages[:index]):
                if m.type == "user":
                    return "chat-mate-response", m
            raise InvalidMessageError("No learner message precedes this Chat Mate reply")

        parent = None
        if target.parent_message_id:
            parent = next((m for m in self._messages if m.id == target.parent_message_id), None)
        if parent is not None and parent.type == "user":
            return "editor-mate-user-comment", parent
        if parent is not None:
            return "editor-mate-chatmate-comment", parent
        for m in reversed(self._messages[:index]):
            if m.type == "chat-mate":
                return "editor-mate-chatmate-comment", m
        raise InvalidMessageError("Cannot tell which message this comment belongs to")

    def cancel(self) -> bool:
        """Abort the running turn. Returns False when nothing is running."""
        if not self.is_busy:
            return False
        logger.info(f"Cancelling turn in conversation {self.conversation_id}")
        self._turn.cancel()
        return True

    async def _run_turn(
        self,
        kind: str,
        body: Callable[[], Awaitable[None]],
        on_abort: Callable[[], None] | None = None,
        persistent: bool = True,
    ) -> TurnOutcome:
        """Run ``body`` as the one active turn.

        A persistent turn creates the conversation if needed and notifies the
        conversation-update hook when it completes; a side question does neither.
        """
        if self.is_busy:
            raise TurnInProgressError()

        self._turn_settings = self.settings
        logger.info(f"Starting {kind} in conversation {self.conversation_id or '(new)'}")

        async def run() -> None:
            if persistent:
                await self._ensure_conversation(self._turn_settings)
            await body()

        task = asyncio.create_task(run())
        self._turn = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # The caller went away; take the turn down with it
            task.cancel()
            await asyncio.wait({task})
            self._abort(on_abort, cancelled=True)
            self._settle(TurnOutcome.CANCELLED)
            raise
        finally:
            self._turn = None

        if task.cancelled():
            self._abort(on_abort, cancelled=True)
            cancelled = TurnCancelledError()
            self._notify("info", cancelled.title, str(cancelled))
            return self._settle(TurnOutcome.CANCELLED)

        error = task.exception()
        if error is not None:
            self._abort(on_abort, cancelled=False)
            if isinstance(error, LanguageMateError):
                logger.warning(f"Turn failed: {error}")
                title, description = error.title, error.user_message()
            else:
                logger.error(f"Turn failed with unexpected error: {error!r}", exc_info=error)
                title, description = "Something went wrong", str(error) or type(error).__name__
            self._notify("error", title, description)
            return self._settle(TurnOutcome.FAILED)

        outcome = self._settle(TurnOutcome.COMPLETED)
        if persistent:
            await self._conversation_updated()
        return outcome

    def _abort(self, on_abort: Callable[[], None] | None, cancelled: bool) -> None:
        if on_abort is not None:
            on_abort()
        if cancelled:
            removed = self._remove_where(lambda m: not _is_settled(m))
        else:
            # Persisted records stay, as does anything the store refused to save
            removed = self._remove_where(lambda m: m.is_streaming)
        if removed:
            logger.debug(f"Removed {removed} unfinished message(s)")

    def _settle(self, outcome: TurnOutcome) -> TurnOutcome:
        self._set_state(TurnState.SETTLED)
        self._events.emit(TurnSettled(outcome=outcome.value, conversation_id=self.conversation_id))
        self.state = TurnState.IDLE
        return outcome

    async def _conversation_updated(self) -> None:
        if self.conversation_id is None:
            return
        title = None
        if self._on_conversation_update is not None:
            try:
                title = await self._on_conversation_update(
                    self.conversation_id, self.messages, self._turn_settings
                )
            except Exception as e:
                logger.warning(f"Conversation update hook failed: {e}")
        self._events.emit(ConversationUpdated(conversation_id=self.conversation_id, title=title))

    # --- per-message wiring shared by every turn ---

    def _require_target_language(self) -> None:
        if not self.settings.target_language.strip():
            raise ConfigurationError("Pick a target language before sending a message")

    def _check_submission(self, text: str, attachments: Sequence[Attachment]) -> None:
        """Reject a send before anything is created or persisted."""
        self._require_target_language()
        cleaned, url_attachments = extract_image_urls(text.strip())
        if not cleaned and not attachments and not url_attachments:
            raise InvalidMessageError("Cannot send an empty message")

    async def _submit(
        self,
        text: str,
        attachments: Sequence[Attachment],
        message_type: MessageType,
    ) -> tuple[Message, list[Message]]:
        """Append and persist a hand-written message. Returns it with the history preceding it."""
        cleaned, url_attachments = extract_image_urls(text.strip())
        all_attachments = [*attachments, *url_attachments]
        if not cleaned and not all_attachments:
            raise InvalidMessageError("Cannot send an empty message")

        prior = [m for m in self._messages if _is_settled(m)]
        local = Message(
            id=new_temporary_id(),
            type=message_type,
            content=cleaned,
            attachments=all_attachments,
        )
        self._append(local)

        persisted = await self._store.add_message(
            self.conversation_id,
            MessageCreate(type=message_type, content=cleaned, attachments=all_attachments),
        )
        self._replace(local.id, persisted)
        return persisted, prior

    async def _generate(
        self,
        template_key: str,
        message_type: MessageType,
        source: Message,
        history: list[ChatMessage],
        parent_id: str | None,
        issued: asyncio.Event | None = None,
    ) -> Message:
        """Stream one AI reply into a new record and persist it once complete."""
        pending = Message(
            id=new_temporary_id(),
            type=message_type,
            content="",
            parent_message_id=parent_id,
            is_streaming=True,
        )
        self._append(pending)

        content, reasoning, metadata = await self._complete(pending.id, template_key, source, history, issued)
        persisted = await self._store.add_message(
            self.conversation_id,
            MessageCreate(
                type=message_type,
                content=content,
                reasoning=reasoning,
                parent_message_id=parent_id,
                metadata=metadata,
            ),
        )
        self._replace(pending.id, persisted)
        return persisted

    async def _complete(
        self,
        target_id: str,
        template_key: str,
        source: Message,
        history: list[ChatMessage],
        issued: asyncio.Event | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> tuple[str, str | None, MessageMetadata]:
        try:
            return await self._call(target_id, template_key, source, history, issued, on_delta)
        finally:
            # Released on failure too, so nothing waits on a call that never went out
            if issued is not None:
                issued.set()

    async def _call(
        self,
        target_id: str,
        template_key: str,
        source: Message,
        history: list[ChatMessage],
        issued: asyncio.Event | None,
        on_delta: DeltaCallback | None,
    ) -> tuple[str, str | None, MessageMetadata]:
        """One completion call. Deltas go to the message ``target_id`` unless ``on_delta`` is given."""
        settings = self._turn_settings
        if target_id in self._writers:
            raise InvalidMessageError(f"Message '{target_id}' already has a running generation")

        prompt = build_prompt(template_key, PromptVariables.from_settings(settings))
        now = datetime.now().astimezone()
        request = CompletionRequest(
            model=settings.model,
            message=source.content,
            system_prompt=prompt.system_prompt,
            history=history,
            attachments=list(source.attachments),
            streaming=settings.streaming,
            enable_reasoning=settings.enable_reasoning,
            api_key=settings.api_key,
            current_datetime=now.isoformat(timespec="seconds"),
            user_timezone=now.tzname(),
        )

        apply = on_delta or (lambda channel, delta: self._apply_delta(target_id, channel, delta))
        self._writers.add(target_id)
        start = self._clock() * 1000
        try:
            if issued is not None:
                issued.set()
            result = await self._llm.send(request)
            if isinstance(result, CompletionStream):
                async with result:
                    decoder = StreamDecoder(
                        on_update=lambda event: apply(event.type, event.content)
                    )
                    decoded = await decoder.decode(result)
                content, reasoning = decoded.content, decoded.reasoning or None
            else:
                content, reasoning = result.content, result.reasoning
        finally:
            self._writers.discard(target_id)

        end = self._clock() * 1000
        logger.debug(f"{template_key} finished in {end - start:.0f} ms")
        return content, reasoning, MessageMetadata.measured(settings.model, start, end)

    # --- editing ---

    async def edit_message(self, message_id: str, content: str) -> Message:
        target = self._get(message_id)
        if not _is_settled(target):
            raise InvalidMessageError("This message is still being generated")
        if not content.strip():
            raise InvalidMessageError("A message cannot be empty")

        updated = await self._store.update_message(message_id, MessageUpdate(content=content.strip()))
        self._replace(message_id, updated)
        return updated

    async def delete_message(self, message_id: str) -> None:
        target = self._get(message_id)
        if not _is_settled(target):
            raise InvalidMessageError("This message is still being generated")

        await self._store.delete_message(message_id)
        self._remove_where(lambda m: m.id == message_id)

    async def delete_all_below(self, message_id: str) -> int:
        """Delete the message and everything after it. Returns the number removed."""
        if self.is_busy:
            raise TurnInProgressError()
        index = self._index(message_id)
        doomed = self._messages[index:]
        for message in doomed:
            if not message.is_temporary:
                await self._store.delete_message(message.id)
        self._messages = self._messages[:index]
        self._publish()
        return len(doomed)

    # --- fork ---

    async def fork_from(self, message_id: str) -> ConversationInfo:
        """Copy the conversation up to and including ``message_id`` into a new one and switch to it."""
        if self.is_busy:
            raise TurnInProgressError()
        index = self._index(message_id)
        if not _is_settled(self._messages[index]):
            raise InvalidMessageError("Cannot fork from a message that is still being generated")

        settings = self.settings
        conversation = await self._store.create_conversation(
            language=settings.target_language,
            title=f"Forked Chat - {settings.target_language}",
            model=settings.model,
            chat_mate_prompt=settings.chat_mate_personality,
            editor_mate_prompt=settings.editor_mate_personality,
        )
        await self._store.update_conversation_settings(conversation.id, settings.persisted())

        id_map: dict[str, str] = {}
        copied: list[Message] = []
        for message in self._messages[: index + 1]:
            if not _is_settled(message):
                continue
            # Parent links survive only when the parent was copied too
            parent = id_map.get(message.parent_message_id) if message.parent_message_id else None
            new = await self._store.add_message(
                conversation.id,
                MessageCreate(
                    type=message.type,
                    content=message.content,
                    reasoning=message.reasoning,
                    parent_message_id=parent,
                    attachments=message.attachments,
                    metadata=message.metadata,
                ),
            )
            id_map[message.id] = new.id
            copied.append(new)

        logger.info(f"Forked {len(copied)} message(s) into conversation {conversation.id}")
        self.conversation_id = conversation.id
        self._messages = copied
        self._events.emit(ConversationCreated(conversation=conversation))
        self._publish()
        return conversation
