import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_, update

from shared.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientPlayersError,
    PartialFinalizeError,
    ValidationError,
)
from shared.pubsub import PubSubClient
from shared.state_machine import MixStateMachine, MixStatus, TransitionError
from .balancing import BalanceResult, BalancingEngine
from .lookups import load_mix, load_player, new_id, store_errors, validate_id
from .match_stats import MatchStatsBook
from .models import db, MapBan, Mix, MixParticipant
from .rating_ledger import RatingLedger
from .slot_registry import SlotRegistry
from .veto import VetoCoordinator

logger = logging.getLogger(__name__)

MAX_SERVER_IP_LENGTH = 64


@dataclass
class FinalizeResult:
    mix_id: str
    winner: str
    credited: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'mix_id': self.mix_id,
            'winner': self.winner,
            'credited': self.credited,
            'skipped': self.skipped,
        }


class MixRegistry:
    """
    Manages the mix lifecycle:
    - Create mixes and read the canonical record
    - waiting -> sorting on balance (creator, full roster)
    - sorting -> live is driven by the veto
    - live -> finished on finalize, after crediting the winners
    - Server address while live
    - Score and scoreboard once finished

    Every status change is a conditional UPDATE guarded on the status the
    transition starts from; a zero rowcount means another request got there
    first and the caller gets ConflictError.
    """

    def __init__(
        self,
        notifier: PubSubClient = None,
        slots: SlotRegistry = None,
        veto: VetoCoordinator = None,
        engine: BalancingEngine = None,
        ledger: RatingLedger = None,
        stats: MatchStatsBook = None
    ):
        self.notifier = notifier
        self.slots = slots or SlotRegistry(notifier)
        self.veto = veto or VetoCoordinator(notifier)
        self.engine = engine or BalancingEngine()
        self.ledger = ledger or RatingLedger()
        self.stats = stats or MatchStatsBook(notifier)

    def create_mix(self, creator_id: str) -> Mix:
        """Create a mix in waiting state with the creator in the first slot."""
        creator = load_player(creator_id)

        mix = Mix(
            id=new_id(),
            creator_id=creator.id,
            status=MixStatus.WAITING.value,
            team_a=[],
            team_b=[]
        )
        with store_errors():
            db.session.add(mix)
            db.session.add(MixParticipant(mix_id=mix.id, player_id=creator.id, slot=0))
            db.session.commit()

        logger.info(f"Mix {mix.id} created by {creator.id}")
        self._notify(mix.id)
        return mix

    def get_mix(self, mix_id: str) -> Mix:
        return load_mix(mix_id)

    def list_mixes(
        self,
        status: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Mix]:
        """List mixes with optional status filtering, newest first."""
        query = Mix.query

        if status:
            query = query.filter_by(status=MixStateMachine.from_state_string(status).state.value)

        query = query.order_by(Mix.created_at.desc())
        with store_errors():
            return query.offset(offset).limit(limit).all()

    def describe(self, mix_id: str) -> dict:
        """Mix record plus roster and veto state, as observers re-read it."""
        mix = load_mix(mix_id)
        roster = self.slots.get_roster(mix.id)
        data = mix.to_dict()
        data['players'] = [p.to_dict() for p in roster]
        data['slots'] = {'filled': len(roster), 'capacity': current_app.config.get('MIX_CAPACITY', 10)}
        data['veto'] = self.veto.get_state(mix.id).to_dict()
        if mix.teams_assigned:
            by_id = {p.id: p for p in roster}
            team_a = [by_id[pid] for pid in mix.team_a if pid in by_id]
            team_b = [by_id[pid] for pid in mix.team_b if pid in by_id]
            data['average_level'] = {
                'A': self.engine.calculate_average_level(team_a),
                'B': self.engine.calculate_average_level(team_b),
            }
        return data

    def balance(self, mix_id: str, player_id: str) -> BalanceResult:
        """Split the full roster into two teams and open the veto."""
        mix = load_mix(mix_id)
        self._require_creator(mix, player_id, "balance the teams")

        sm = MixStateMachine.from_state_string(mix.status)
        if not sm.can_transition('balance'):
            raise TransitionError(mix.status, MixStatus.SORTING.value, f"Teams already defined, mix is {mix.status}")

        roster = self.slots.get_roster(mix.id)
        capacity = current_app.config.get('MIX_CAPACITY', 10)
        if len(roster) != capacity:
            raise InsufficientPlayersError(len(roster), capacity)

        result = self.engine.balance(roster)
        target = sm.transition('balance', {'roster_size': len(roster), 'capacity': capacity})

        with store_errors():
            outcome = db.session.execute(
                update(Mix)
                .where(Mix.id == mix.id, Mix.status == MixStatus.WAITING.value)
                .values(
                    status=target.value,
                    team_a=result.team_a_ids,
                    team_b=result.team_b_ids,
                    final_map=None,
                    updated_at=datetime.utcnow()
                )
            )
            if outcome.rowcount != 1:
                db.session.rollback()
                raise ConflictError("Mix was balanced by another request", {"mix_id": mix.id})

            MapBan.query.filter_by(mix_id=mix.id).delete()
            db.session.commit()

        logger.info(f"Mix {mix.id} balanced (diff {result.diff:.1f}), status {target.value}")
        self._notify(mix.id)
        return result

    def finalize(self, mix_id: str, player_id: str, winner: str) -> FinalizeResult:
        """
        Record the winning side, credit its players, and finish the mix.

        Safe to re-issue after PartialFinalizeError: the winner stays claimed
        and players already credited are skipped.
        """
        if winner not in ('A', 'B'):
            raise ValidationError("Winner must be 'A' or 'B'", {"winner": winner})

        mix = load_mix(mix_id)
        self._require_creator(mix, player_id, "finalize the mix")

        sm = MixStateMachine.from_state_string(mix.status)
        if not sm.can_transition('finalize'):
            raise TransitionError(mix.status, MixStatus.FINISHED.value, f"Cannot finalize while mix is {mix.status}")
        target = sm.transition('finalize', {'winner': winner})

        self._claim_winner(mix, winner)

        winners = list(mix.team_a if winner == 'A' else mix.team_b)
        ledger_result = self.ledger.apply_win(
            mix.id,
            winners,
            current_app.config.get('WIN_ELO_DELTA', 25)
        )
        if not ledger_result.complete:
            raise PartialFinalizeError(
                mix.id,
                credited=self.ledger.credited_players(mix.id),
                failed=ledger_result.failed
            )

        with store_errors():
            outcome = db.session.execute(
                update(Mix)
                .where(
                    Mix.id == mix.id,
                    Mix.status == MixStatus.LIVE.value,
                    Mix.winner == winner
                )
                .values(status=target.value, finished_at=datetime.utcnow(), updated_at=datetime.utcnow())
            )
            db.session.commit()

        if outcome.rowcount != 1:
            raise ConflictError("Mix was already finalized", {"mix_id": mix.id})

        logger.info(f"Mix {mix.id} finished, Team {winner} won")
        self._notify(mix.id)
        return FinalizeResult(
            mix_id=mix.id,
            winner=winner,
            credited=ledger_result.credited,
            skipped=ledger_result.skipped
        )

    def set_server_ip(self, mix_id: str, player_id: str, server_ip: Optional[str]) -> Mix:
        """Set (or clear, with an empty value) the connect address of a live mix."""
        mix = load_mix(mix_id)
        self._require_creator(mix, player_id, "set the server address")
        MixStateMachine.from_state_string(mix.status).require('set_server')

        value = (server_ip or '').strip()
        if len(value) > MAX_SERVER_IP_LENGTH:
            raise ValidationError(f"Server address longer than {MAX_SERVER_IP_LENGTH} characters")

        with store_errors():
            outcome = db.session.execute(
                update(Mix)
                .where(Mix.id == mix.id, Mix.status == MixStatus.LIVE.value)
                .values(server_ip=value or None, updated_at=datetime.utcnow())
            )
            db.session.commit()

        if outcome.rowcount != 1:
            raise ConflictError("Mix is no longer live", {"mix_id": mix.id})

        self._notify(mix.id)
        return load_mix(mix.id)

    def _claim_winner(self, mix: Mix, winner: str):
        with store_errors():
            outcome = db.session.execute(
                update(Mix)
                .where(
                    Mix.id == mix.id,
                    Mix.status == MixStatus.LIVE.value,
                    or_(Mix.winner.is_(None), Mix.winner == winner)
                )
                .values(winner=winner, updated_at=datetime.utcnow())
            )
            db.session.commit()

        if outcome.rowcount != 1:
            db.session.refresh(mix)
            if mix.status == MixStatus.FINISHED.value:
                raise TransitionError(mix.status, MixStatus.FINISHED.value, "Mix was already finalized")
            raise ConflictError(
                f"Finalize already in progress with Team {mix.winner} as winner",
                {"winner": mix.winner}
            )

    def _require_creator(self, mix: Mix, player_id: str, action: str):
        if validate_id(player_id, 'player_id') != mix.creator_id:
            raise AuthorizationError(f"Only the mix creator can {action}")

    def _notify(self, mix_id: str):
        if self.notifier:
            self.notifier.publish_mix_changed(mix_id)
