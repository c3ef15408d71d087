"""
Composition root. Everything the services need is built here and handed to them explicitly.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Optional

from src.core.config import Settings
from src.core.events import EventBus
from src.core.exceptions import NetworkUnavailableError
from src.core.logging_config import configure_logging
from src.db.database import open_store_hub
from src.db.memory_store import StoreConnection, StoreHub
from src.services.local_service import LocalGameService
from src.services.room_service import RoomService

logger = logging.getLogger(__name__)


@dataclass
class DotsAndBoxesApp:
    player_name: str
    settings: Settings
    events: EventBus = field(default_factory=EventBus)
    connection: Optional[StoreConnection] = None
    rooms: Optional[RoomService] = None

    @property
    def online(self) -> bool:
        return self.rooms is not None

    def local_game(self, player_names: list[str], grid_size: Optional[int] = None) -> LocalGameService:
        """Hot-seat game. Works with or without a connection to the store."""
        return LocalGameService(
            self.events,
            player_names,
            grid_size or self.settings.default_grid_size,
            self.settings,
        )

    def close(self) -> None:
        if self.rooms is not None:
            self.rooms.leave_room()
            self.rooms.cancel_quick_match()
        if self.connection is not None:
            self.connection.close()
            logger.info("%s disconnected", self.player_name)


def create_app(
    player_name: str,
    settings: Optional[Settings] = None,
    hub: Optional[StoreHub] = None,
    rng: Optional[random.Random] = None,
) -> DotsAndBoxesApp:
    """Wire up one participant. Without a reachable store only local games are available."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    app = DotsAndBoxesApp(player_name=player_name, settings=settings)

    try:
        hub = hub or open_store_hub(settings)
        app.connection = hub.connect()
    except NetworkUnavailableError as e:
        logger.warning("Store unavailable, only local games are possible: %s", e)
        return app

    app.rooms = RoomService(
        app.connection, app.events, player_name, settings, rng=rng, clock=hub.clock
    )
    logger.info("%s connected as client %s", player_name, app.connection.client_id)
    return app
