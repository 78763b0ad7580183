"""Process-wide wiring of the relay core.

``ChatHub`` builds the store and core components from the app config and
keeps them together as a resettable singleton, so WebSocket and HTTP
handlers share one registry and one set of room shards.
"""
import logging
from typing import Optional

from chatsphere.auth import TokenVerifier
from chatsphere.config import AppConfig, get_config
from chatsphere.storage import MessageStore

from .lifecycle import ConnectionLifecycleController
from .messages import MessageRelay
from .rooms import RoomManager
from .sessions import SessionRegistry
from .signaling import SignalingRelay

logger = logging.getLogger(__name__)


class ChatHub:
    """All relay components for one process."""

    _instance: Optional["ChatHub"] = None

    def __init__(self, config: AppConfig, store: MessageStore) -> None:
        self.config = config
        self.store = store
        self.registry = SessionRegistry()
        self.rooms = RoomManager()
        self.messages = MessageRelay(
            store,
            self.rooms,
            history_limit=config.relay.history_limit,
            max_body_length=config.relay.max_body_length,
        )
        self.rooms.set_history_provider(self.messages.replay_history)
        self.signaling = SignalingRelay(self.registry)
        self.verifier = TokenVerifier(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
        )
        self.lifecycle = ConnectionLifecycleController(
            registry=self.registry,
            rooms=self.rooms,
            messages=self.messages,
            signaling=self.signaling,
            verifier=self.verifier,
            token_query_param=config.auth.token_query_param,
            idle_timeout_seconds=config.relay.idle_timeout_seconds,
            max_pending_frames=config.relay.max_pending_frames,
        )

    @classmethod
    def get_instance(
        cls,
        config: Optional[AppConfig] = None,
        store: Optional[MessageStore] = None,
    ) -> "ChatHub":
        """Get or create the singleton hub.

        Args:
            config: Config to build from (defaults to ``get_config()``).
            store: Message store (defaults to the ``MessageStore`` singleton
                at ``config.storage.db_path``).
        """
        if cls._instance is None:
            config = config or get_config()
            store = store or MessageStore.get_instance(config.storage.db_path)
            cls._instance = cls(config, store)
            logger.info("[Hub] Relay core ready (db=%s)", config.storage.db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the singleton. The store is left to its own reset."""
        cls._instance = None
