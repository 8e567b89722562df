import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from shared.errors import AuthorizationError, ConflictError, ValidationError
from shared.pubsub import PubSubClient
from shared.state_machine import MixStateMachine, MixStatus
from .lookups import load_mix, store_errors, validate_id
from .models import db, MapBan, Mix

logger = logging.getLogger(__name__)


def turn_for(ban_count: int) -> str:
    """Side that bans next: A on an even ban count, B on an odd one."""
    return 'A' if ban_count % 2 == 0 else 'B'


@dataclass
class VetoState:
    mix_id: str
    status: str
    banned_maps: List[str] = field(default_factory=list)
    remaining_maps: List[str] = field(default_factory=list)
    final_map: Optional[str] = None

    @property
    def turn(self) -> Optional[str]:
        if self.final_map:
            return None
        return turn_for(len(self.banned_maps))

    def to_dict(self) -> dict:
        return {
            'mix_id': self.mix_id,
            'status': self.status,
            'banned_maps': self.banned_maps,
            'remaining_maps': self.remaining_maps,
            'turn': self.turn,
            'final_map': self.final_map,
        }


class VetoCoordinator:
    """
    Turn-based map veto over a fixed, ordered map pool.

    Bans are rows keyed by (mix, position). A ban claims position
    ``len(banned_maps)``, so two bans racing for the same turn cannot both
    land. Once pool size - 1 maps are banned in ``sorting`` the remaining map
    becomes the final map and the mix goes ``live`` through one conditional
    update.
    """

    def __init__(self, notifier: PubSubClient = None):
        self.notifier = notifier

    @property
    def map_pool(self) -> List[str]:
        return list(current_app.config['MAP_POOL'])

    def remaining_maps(self, banned: List[str]) -> List[str]:
        return [m for m in self.map_pool if m not in banned]

    def get_state(self, mix_id: str) -> VetoState:
        return self._state_of(load_mix(mix_id))

    def side_of(self, mix: Mix, player_id: str) -> Optional[str]:
        if player_id in (mix.team_a or []):
            return 'A'
        if player_id in (mix.team_b or []):
            return 'B'
        return None

    def ban(self, mix_id: str, map_id: str, player_id: str, expected_count: int = None) -> VetoState:
        mix = load_mix(mix_id)
        player_id = validate_id(player_id, 'player_id')
        pool = self.map_pool

        if map_id not in pool:
            raise ValidationError(f"Unknown map '{map_id}'", {"map_pool": pool})

        sm = MixStateMachine.from_state_string(mix.status)
        if not sm.can_perform('ban'):
            raise ConflictError(
                f"Veto is closed, mix is {mix.status}",
                {"status": mix.status}
            )

        banned = mix.banned_maps
        if map_id in banned:
            # Duplicate delivery of a ban that already landed
            return self._state_of(mix)

        if len(banned) >= len(pool) - 1:
            if sm.state == MixStatus.SORTING and not mix.final_map:
                self.lock_map(mix.id)
                return self.get_state(mix.id)
            raise ConflictError("All bans are used, waiting for the final map", {"banned_maps": banned})

        self._authorize(mix, player_id, len(banned))

        if expected_count is not None and expected_count != len(banned):
            raise ConflictError(
                f"Ban count changed (expected {expected_count}, now {len(banned)}); re-read the veto",
                {"expected_count": expected_count, "ban_count": len(banned)}
            )

        position = len(banned)
        try:
            with store_errors(allow_integrity=True):
                self._insert_ban(mix, position, map_id, player_id)
        except IntegrityError:
            db.session.rollback()
            db.session.refresh(mix)
            if map_id in mix.banned_maps:
                return self._state_of(mix)
            raise ConflictError(
                f"Another ban took turn {position + 1}; re-read the veto",
                {"ban_count": len(mix.banned_maps)}
            )

        logger.info(f"Mix {mix.id}: {map_id} banned at position {position} by {player_id}")
        self._notify(mix.id)

        db.session.refresh(mix)
        if sm.state == MixStatus.SORTING and len(mix.banned_maps) == len(pool) - 1:
            self.lock_map(mix.id)

        return self.get_state(mix.id)

    def lock_map(self, mix_id: str) -> bool:
        """
        Fix the final map and move the mix from sorting to live.

        Returns True only for the caller whose conditional update won.
        """
        mix = load_mix(mix_id)
        pool = self.map_pool
        banned = mix.banned_maps

        sm = MixStateMachine.from_state_string(mix.status)
        if not sm.can_transition('lock_map'):
            return False
        target = sm.transition('lock_map', {'ban_count': len(banned), 'pool_size': len(pool)})

        remaining = self.remaining_maps(banned)
        final_map = remaining[0]

        with store_errors():
            outcome = db.session.execute(
                update(Mix)
                .where(
                    Mix.id == mix.id,
                    Mix.status == MixStatus.SORTING.value,
                    Mix.final_map.is_(None)
                )
                .values(status=target.value, final_map=final_map, updated_at=datetime.utcnow())
            )
            db.session.commit()

        if outcome.rowcount != 1:
            logger.debug(f"Mix {mix.id}: final map already locked by another request")
            return False

        logger.info(f"Mix {mix.id}: final map {final_map}, status {target.value}")
        self._notify(mix.id)
        return True

    def _authorize(self, mix: Mix, player_id: str, ban_count: int):
        if mix.teams_assigned:
            turn = turn_for(ban_count)
            side = self.side_of(mix, player_id)
            if side != turn:
                raise AuthorizationError(
                    f"It is Team {turn}'s turn to ban",
                    {"turn": turn, "side": side}
                )
        elif player_id != mix.creator_id:
            raise AuthorizationError("Only the mix creator can ban before teams are defined")

    def _insert_ban(self, mix: Mix, position: int, map_id: str, player_id: str):
        # Touch the mix row guarded on the status we validated against, so a
        # concurrent balance or map lock invalidates this ban.
        guard = db.session.execute(
            update(Mix)
            .where(Mix.id == mix.id, Mix.status == mix.status, Mix.final_map.is_(None))
            .values(updated_at=datetime.utcnow())
        )
        if guard.rowcount != 1:
            db.session.rollback()
            raise ConflictError("Mix changed while banning; re-read the veto")

        db.session.add(MapBan(mix_id=mix.id, position=position, map_id=map_id, banned_by=player_id))
        db.session.commit()

    def _state_of(self, mix: Mix) -> VetoState:
        banned = mix.banned_maps
        return VetoState(
            mix_id=mix.id,
            status=mix.status,
            banned_maps=banned,
            remaining_maps=self.remaining_maps(banned),
            final_map=mix.final_map,
        )

    def _notify(self, mix_id: str):
        if self.notifier:
            self.notifier.publish_mix_changed(mix_id)
