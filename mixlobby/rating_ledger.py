import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .models import db, Player, RatingCredit

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    credited: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # already credited for this mix
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            'credited': self.credited,
            'skipped': self.skipped,
            'failed': self.failed,
        }


class RatingLedger:
    """
    Credits a fixed rating delta to the winners of a mix.

    Each credit is its own transaction: increment ``elo_interno`` in the
    database with ``elo_interno = elo_interno + delta``, then insert the
    (mix, player) credit row. The unique credit row is the
    idempotency key, so re-running a finalize never credits a player twice.
    """

    def __init__(self, delta: int = 25):
        self.delta = delta

    def apply_win(self, mix_id: str, player_ids: Iterable[str], delta: int = None) -> LedgerResult:
        """
        Credit every player in ``player_ids`` for winning ``mix_id``.

        Never raises for a single player's failure; the caller inspects
        ``LedgerResult.failed``.
        """
        amount = self.delta if delta is None else delta
        result = LedgerResult()

        for player_id in player_ids:
            try:
                self._credit(mix_id, player_id, amount)
            except IntegrityError:
                db.session.rollback()
                result.skipped.append(player_id)
                logger.info(f"Player {player_id} already credited for mix {mix_id}")
            except SQLAlchemyError as e:
                db.session.rollback()
                result.failed.append(player_id)
                logger.error(f"Rating credit failed for player {player_id} in mix {mix_id}: {e}")
            else:
                result.credited.append(player_id)
                logger.info(f"Credited {amount:+d} to player {player_id} for mix {mix_id}")

        return result

    def credited_players(self, mix_id: str) -> List[str]:
        rows = RatingCredit.query.filter_by(mix_id=mix_id).order_by(RatingCredit.id).all()
        return [r.player_id for r in rows]

    def _credit(self, mix_id: str, player_id: str, amount: int):
        self._increment(player_id, amount)
        db.session.add(RatingCredit(mix_id=mix_id, player_id=player_id, amount=amount))
        db.session.commit()  # IntegrityError here means already credited

    def _increment(self, player_id: str, amount: int):
        outcome = db.session.execute(
            update(Player)
            .where(Player.id == player_id)
            .values(elo_interno=Player.elo_interno + amount)
        )
        if outcome.rowcount != 1:
            raise SQLAlchemyError(f"Player {player_id} not found for rating increment")
