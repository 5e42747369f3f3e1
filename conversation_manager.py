import asyncio
import itertools
import logging
from typing import Callable, Dict, List, Optional, Set

from components import ConversationDriver, HistoryStore, LanguageBackend
from config import Settings
from errors import ConfigurationError, InvalidTransitionError, NoInputError, VoiceChatError
from history import InMemoryHistoryStore, SupabaseHistoryStore
from live_driver import LiveModeDriver
from llm import build_language_backend
from models import ConversationState, PendingTurn, ServiceMode, Turn
from pipeline_driver import PipelineModeDriver
from supabase_client import SupabaseClient

logger = logging.getLogger("ConversationManager")

S = ConversationState

# Legal transitions; anything else raises InvalidTransitionError.
TRANSITIONS: Dict[ConversationState, Set[ConversationState]] = {
    S.IDLE: {S.CONNECTING, S.ERROR},
    S.ERROR: {S.CONNECTING, S.IDLE, S.ERROR},
    S.CONNECTING: {S.LISTENING, S.IDLE, S.ERROR},
    S.LISTENING: {S.PROCESSING, S.IDLE, S.ERROR},
    S.PROCESSING: {S.IDLE, S.ERROR},
}

ACTIVE_STATES = frozenset({S.CONNECTING, S.LISTENING, S.PROCESSING})

DriverFactory = Callable[["ConversationManager", Settings], ConversationDriver]

DEFAULT_DRIVERS: Dict[ServiceMode, DriverFactory] = {
    ServiceMode.LIVE: LiveModeDriver,
    ServiceMode.PIPELINE: PipelineModeDriver,
}


class ConversationManager:
    """
    The one conversation state machine of the process.

    Owns the state, the pending turn, the history list and the active
    driver. Drivers report transcript deltas, turn boundaries and their own
    end through the methods below; the manager turns every failure into
    the error state and guarantees resource release on every exit path.
    """

    def __init__(self,
                 settings: Settings,
                 drivers: Optional[Dict[ServiceMode, DriverFactory]] = None,
                 history_store: Optional[HistoryStore] = None,
                 supabase: Optional[SupabaseClient] = None,
                 language: Optional[LanguageBackend] = None,
                 on_state_change: Optional[Callable[[ConversationState, Optional[str]], None]] = None,
                 on_transcript: Optional[Callable[[PendingTurn], None]] = None,
                 on_turn: Optional[Callable[[Turn], None]] = None):
        self.settings = settings
        self.mode = settings.service_mode
        self.drivers = dict(drivers or DEFAULT_DRIVERS)
        self.on_state_change = on_state_change
        self.on_transcript = on_transcript
        self.on_turn = on_turn

        self.state = ConversationState.IDLE
        self.error_message: Optional[str] = None
        self.pending = PendingTurn()
        self.history: List[Turn] = []

        self.supabase = supabase
        self._owns_supabase = False
        if self.supabase is None and settings.supabase_configured:
            self.supabase = SupabaseClient(settings.supabase_url, settings.supabase_key,
                                           timeout=settings.request_timeout)
            self._owns_supabase = True
        self.history_store = history_store or self._default_history_store()

        # the language backend lives as long as the session so its context
        # carries over from one pipeline turn to the next
        self._language = language
        self._owns_language = language is None

        self._driver: Optional[ConversationDriver] = None
        self._turn_ids = itertools.count(1)
        self._writes: Set[asyncio.Future] = set()
        self._stop_count = 0

    def _default_history_store(self) -> HistoryStore:
        if self.supabase is not None:
            return SupabaseHistoryStore(self.supabase)
        return InMemoryHistoryStore()

    def language_backend(self, settings: Settings) -> LanguageBackend:
        """Return the session's language backend, building it on first use."""
        if self._language is None:
            self._language = build_language_backend(settings, self.supabase)
            self._owns_language = True
        return self._language

    async def _release_language(self):
        language, self._language = self._language, None
        if language is not None and self._owns_language:
            try:
                await language.close()
            except Exception as e:
                logger.warning("Error closing language backend: %s", e)

    @property
    def session_id(self) -> str:
        return self.settings.session_id

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def driver(self) -> Optional[ConversationDriver]:
        return self._driver

    # --- state -----------------------------------------------------------

    def transition(self, new_state: ConversationState):
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, new_state)
        logger.info("State: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        if self.on_state_change:
            self.on_state_change(new_state, self.error_message)

    def _set_error(self, error: BaseException):
        self.error_message = str(error) or type(error).__name__
        logger.error("Conversation failed: %s", self.error_message)
        self.transition(S.ERROR)

    # --- pending turn ----------------------------------------------------

    def _transcript_changed(self):
        if self.on_transcript:
            self.on_transcript(self.pending.copy())

    def append_user_text(self, delta: str):
        self.pending.user_text += delta
        self._transcript_changed()

    def append_model_text(self, delta: str):
        self.pending.model_text += delta
        self._transcript_changed()

    def set_user_text(self, text: str):
        self.pending.user_text = text
        self._transcript_changed()

    def set_model_text(self, text: str):
        self.pending.model_text = text
        self._transcript_changed()

    def _reset_pending(self):
        if not self.pending.is_empty():
            self.pending = PendingTurn()
            self._transcript_changed()

    def finalize_turn(self) -> Optional[Turn]:
        """
        Move the pending turn into history in one step.

        Returns:
            The new Turn, or None when nothing was said on either side
        """
        pending, self.pending = self.pending, PendingTurn()
        if pending.is_empty():
            return None
        turn = Turn(id=next(self._turn_ids), user_text=pending.user_text, model_text=pending.model_text)
        self.history.append(turn)
        logger.info("Turn %s finalized", turn.id)
        self._transcript_changed()
        if self.on_turn:
            self.on_turn(turn)
        self._persist(turn)
        return turn

    def _persist(self, turn: Turn):
        write = asyncio.ensure_future(self._append_to_store(turn))
        self._writes.add(write)
        write.add_done_callback(self._writes.discard)

    async def _append_to_store(self, turn: Turn):
        try:
            await self.history_store.append(self.session_id, turn)
        except Exception as e:
            logger.error("Error saving chat turn: %s", e)

    async def flush_history(self):
        """Wait for outstanding history writes."""
        if self._writes:
            await asyncio.gather(*list(self._writes))

    async def load_history(self) -> List[Turn]:
        try:
            turns = await self.history_store.load(self.session_id)
        except Exception as e:
            self._set_error(VoiceChatError(f"Failed to load history: {e}"))
            return []
        self.history = list(turns)
        numeric_ids = [turn.id for turn in self.history if isinstance(turn.id, int)]
        self._turn_ids = itertools.count(max(numeric_ids, default=0) + 1)
        logger.info("Loaded %d turn(s) for session %s", len(self.history), self.session_id)
        return self.history

    # --- lifecycle -------------------------------------------------------

    async def start(self):
        if self.state not in (S.IDLE, S.ERROR):
            logger.warning("Start ignored while %s", self.state.value)
            return

        settings = self.settings.with_mode(self.mode)
        try:
            settings.validate(self.mode)
        except ConfigurationError as e:
            self._set_error(e)
            return

        self.error_message = None
        self.pending = PendingTurn()
        self.transition(S.CONNECTING)

        driver = self.drivers[self.mode](self, settings)
        self._driver = driver
        try:
            await driver.start()
        except Exception as e:
            if self._driver is driver:
                self._driver = None
                stops = self._stop_count
                await driver.stop()
                if self._stop_count != stops:
                    return
                self.pending = PendingTurn()
                self._set_error(e)
            return

        if self._driver is driver and self.state is S.CONNECTING:
            self.transition(S.LISTENING)

    async def stop(self):
        """
        Stop the active conversation and release everything. Idempotent.
        """
        self._stop_count += 1
        driver, self._driver = self._driver, None
        if driver is not None:
            await driver.stop(stop_playback=True)
        self._reset_pending()
        if self.state is not S.IDLE:
            self.transition(S.IDLE)

    async def toggle(self):
        if self.state is S.LISTENING:
            await self.stop()
        elif self.state in (S.IDLE, S.ERROR):
            await self.start()

    async def switch_mode(self, mode: ServiceMode):
        if self._driver is not None or self.is_active:
            await self.stop()
        if mode is not self.mode:
            logger.info("Mode: %s -> %s", self.mode.value, mode.value)
            self.mode = mode

    async def apply_settings(self, settings: Settings):
        """
        Replace the settings between conversations; rebuilds the backend
        client when the Supabase project changes and drops the language
        backend built from the old settings.
        """
        if self.is_active:
            raise ConfigurationError("Settings cannot change while a conversation is active.")
        project_changed = (settings.supabase_url, settings.supabase_key) != \
            (self.settings.supabase_url, self.settings.supabase_key)
        self.settings = settings
        self.mode = settings.service_mode
        if project_changed:
            if self._owns_supabase and self.supabase is not None:
                await self.supabase.aclose()
            self.supabase = None
            self._owns_supabase = False
            if settings.supabase_configured:
                self.supabase = SupabaseClient(settings.supabase_url, settings.supabase_key,
                                               timeout=settings.request_timeout)
                self._owns_supabase = True
            self.history_store = self._default_history_store()
        if self._owns_language:
            await self._release_language()

    async def shutdown(self):
        await self.stop()
        await self.flush_history()
        await self._release_language()
        if self._owns_supabase and self.supabase is not None:
            await self.supabase.aclose()
            self.supabase = None

    async def driver_finished(self, driver: ConversationDriver,
                              error: Optional[BaseException] = None,
                              stop_playback: bool = True):
        """
        Called by a driver when its conversation ends on its own: backend
        close, transport error, pipeline completion or failure.
        """
        if driver is not self._driver or driver.stopped_manually:
            return
        self._driver = None
        stops = self._stop_count
        await driver.stop(stop_playback=stop_playback)
        if self._stop_count != stops:
            # the user stopped while the driver was releasing
            return
        self._reset_pending()
        if error is None or isinstance(error, NoInputError):
            if error is not None:
                logger.info("%s", error)
            self.transition(S.IDLE)
        else:
            self._set_error(error)
