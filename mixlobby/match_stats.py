import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from shared.errors import AuthorizationError, ConflictError, ValidationError
from shared.pubsub import PubSubClient
from shared.state_machine import MixStateMachine, MixStatus
from .lookups import load_mix, store_errors, validate_id
from .models import db, MatchStat, Mix, MixParticipant

logger = logging.getLogger(__name__)

MAX_ROUNDS = 99

# MVP score weights
KILL_WEIGHT = 1.0
ASSIST_WEIGHT = 0.5
ADR_WEIGHT = 2.0
DEATH_WEIGHT = 0.3


def calculate_mvp_score(stat) -> float:
    """Weighted scoreboard line. Works on MatchStat rows and StatLine alike."""
    return (
        stat.kills * KILL_WEIGHT
        + stat.assists * ASSIST_WEIGHT
        + stat.adr * ADR_WEIGHT
        - stat.deaths * DEATH_WEIGHT
    )


def pick_mvp(stats: Sequence):
    """Highest MVP score; the earlier line wins a tie. None for no lines."""
    best = None
    best_score = None
    for stat in stats:
        score = calculate_mvp_score(stat)
        if best is None or score > best_score:
            best, best_score = stat, score
    return best


@dataclass
class StatLine:
    player_id: str
    kills: int = 0
    assists: int = 0
    deaths: int = 0
    adr: float = 0.0
    kdr: Optional[float] = None

    def __post_init__(self):
        if self.kdr is None:
            self.kdr = round(self.kills / max(self.deaths, 1), 2)


@dataclass
class StatsSheet:
    mix_id: str
    score_a: Optional[int] = None
    score_b: Optional[int] = None
    lines: List[dict] = field(default_factory=list)
    mvp: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'mix_id': self.mix_id,
            'score_a': self.score_a,
            'score_b': self.score_b,
            'players': self.lines,
            'mvp': self.mvp,
        }


class MatchStatsBook:
    """
    Final score and per-player scoreboard of finished mixes.

    The creator submits the whole sheet at once after finalize; a new
    submission replaces the previous one. The MVP flag is recomputed on every
    submission and never set by the caller.
    """

    def __init__(self, notifier: PubSubClient = None):
        self.notifier = notifier

    def record(self, mix_id: str, player_id: str, score_a, score_b, players) -> StatsSheet:
        mix = load_mix(mix_id)
        if validate_id(player_id, 'player_id') != mix.creator_id:
            raise AuthorizationError("Only the mix creator can record match stats")
        MixStateMachine.from_state_string(mix.status).require('record_stats')

        score_a = self._count(score_a, 'score_a', MAX_ROUNDS)
        score_b = self._count(score_b, 'score_b', MAX_ROUNDS)
        if score_a == score_b or ('A' if score_a > score_b else 'B') != mix.winner:
            raise ValidationError(
                f"Score {score_a}-{score_b} does not match the recorded winner",
                {"winner": mix.winner}
            )

        lines = self._parse_lines(mix, players)
        mvp = pick_mvp(lines)

        try:
            with store_errors(allow_integrity=True):
                MatchStat.query.filter_by(mix_id=mix.id).delete()
                for line in lines:
                    db.session.add(MatchStat(
                        mix_id=mix.id,
                        player_id=line.player_id,
                        kills=line.kills,
                        assists=line.assists,
                        deaths=line.deaths,
                        adr=line.adr,
                        kdr=line.kdr,
                        is_mvp=line is mvp
                    ))
                outcome = db.session.execute(
                    update(Mix)
                    .where(Mix.id == mix.id, Mix.status == MixStatus.FINISHED.value)
                    .values(score_a=score_a, score_b=score_b, updated_at=datetime.utcnow())
                )
                if outcome.rowcount != 1:
                    db.session.rollback()
                    raise ConflictError("Mix is not finished", {"mix_id": mix.id})
                db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("Stats were recorded by another request", {"mix_id": mix.id})

        logger.info(f"Stats recorded for mix {mix.id} ({score_a}-{score_b}), MVP {mvp.player_id if mvp else None}")
        if self.notifier:
            self.notifier.publish_mix_changed(mix.id)
        return self.sheet(mix.id)

    def sheet(self, mix_id: str) -> StatsSheet:
        mix = load_mix(mix_id)
        with store_errors():
            rows = list(mix.stats)
        mvp = next((r.player_id for r in rows if r.is_mvp), None)
        return StatsSheet(
            mix_id=mix.id,
            score_a=mix.score_a,
            score_b=mix.score_b,
            lines=[r.to_dict() for r in rows],
            mvp=mvp
        )

    def _parse_lines(self, mix: Mix, players) -> List[StatLine]:
        if not isinstance(players, list) or not players:
            raise ValidationError("players must be a non-empty list")

        with store_errors():
            roster = {
                p.player_id for p in MixParticipant.query.filter_by(mix_id=mix.id).all()
            }

        lines = []
        seen = set()
        for row in players:
            if not isinstance(row, dict):
                raise ValidationError("Each stat line must be an object")
            player_id = validate_id(row.get('player_id'), 'player_id')
            if player_id not in roster:
                raise ValidationError(f"Player {player_id} did not play in this mix", {"player_id": player_id})
            if player_id in seen:
                raise ValidationError(f"Duplicate stat line for {player_id}", {"player_id": player_id})
            seen.add(player_id)

            kdr = row.get('kdr')
            lines.append(StatLine(
                player_id=player_id,
                kills=self._count(row.get('kills', 0), 'kills'),
                assists=self._count(row.get('assists', 0), 'assists'),
                deaths=self._count(row.get('deaths', 0), 'deaths'),
                adr=self._rate(row.get('adr', 0), 'adr'),
                kdr=None if kdr is None else self._rate(kdr, 'kdr')
            ))
        return lines

    def _count(self, value, field_name: str, maximum: int = None) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{field_name} must be an integer")
        if value < 0 or (maximum is not None and value > maximum):
            raise ValidationError(f"{field_name} out of range")
        return value

    def _rate(self, value, field_name: str) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{field_name} must be a number")
        if not math.isfinite(value) or value < 0:
            raise ValidationError(f"{field_name} out of range")
        return float(value)
