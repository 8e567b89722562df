import logging
from typing import List

from flask import current_app
from sqlalchemy.exc import IntegrityError

from shared.errors import ConflictError, MixFullError
from shared.pubsub import PubSubClient
from shared.state_machine import MixStateMachine
from .lookups import load_mix, load_player, store_errors
from .models import db, MixParticipant, Player

logger = logging.getLogger(__name__)


class SlotRegistry:
    """
    Roster of a mix.

    Joins are idempotent on (mix, player) and capped at MIX_CAPACITY. Each
    join claims the next free slot number; the (mix, slot) unique constraint
    makes two concurrent joins for the last slot collide, and the loser
    re-reads the roster before trying again.
    """

    def __init__(self, notifier: PubSubClient = None):
        self.notifier = notifier

    @property
    def capacity(self) -> int:
        return current_app.config.get('MIX_CAPACITY', 10)

    def get_roster(self, mix_id: str) -> List[Player]:
        """Players of a mix in join order."""
        mix = load_mix(mix_id)
        with store_errors():
            rows = MixParticipant.query.filter_by(mix_id=mix.id).order_by(MixParticipant.slot).all()
        return [row.player for row in rows]

    def is_member(self, mix_id: str, player_id: str) -> bool:
        with store_errors():
            return MixParticipant.query.filter_by(
                mix_id=mix_id,
                player_id=player_id
            ).first() is not None

    def join(self, mix_id: str, player_id: str) -> List[Player]:
        """Add a player to the roster. Re-joining is a no-op."""
        mix = load_mix(mix_id)
        player = load_player(player_id)
        max_attempts = current_app.config.get('JOIN_MAX_ATTEMPTS', 3)

        for attempt in range(max_attempts):
            if self.is_member(mix.id, player.id):
                return self.get_roster(mix.id)

            db.session.refresh(mix)
            MixStateMachine.from_state_string(mix.status).require('join')

            with store_errors():
                taken = MixParticipant.query.filter_by(mix_id=mix.id).count()
            if taken >= self.capacity:
                raise MixFullError(mix.id, self.capacity)

            db.session.add(MixParticipant(mix_id=mix.id, player_id=player.id, slot=taken))
            try:
                with store_errors(allow_integrity=True):
                    db.session.commit()
            except IntegrityError:
                # Lost the slot (or a duplicate join raced us); re-read and retry
                db.session.rollback()
                logger.debug(f"Join collision on mix {mix.id} slot {taken}, attempt {attempt + 1}")
                continue

            logger.info(f"Player {player.id} joined mix {mix.id} in slot {taken}")
            self._notify(mix.id)
            return self.get_roster(mix.id)

        if self.is_member(mix.id, player.id):
            return self.get_roster(mix.id)
        raise ConflictError(
            f"Could not claim a slot in mix {mix.id}, roster is changing; retry",
            {"mix_id": mix.id}
        )

    def _notify(self, mix_id: str):
        if self.notifier:
            self.notifier.publish_roster_changed(mix_id)
