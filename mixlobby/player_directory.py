import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from shared.errors import ConflictError, ValidationError
from shared.state_machine import MixStatus
from .lookups import load_player, store_errors, validate_id
from .models import db, MatchStat, Mix, MixParticipant, Player

logger = logging.getLogger(__name__)

MAX_LEVEL = 99
MAX_NICKNAME_LENGTH = 100


class PlayerDirectory:
    """
    Player profiles as reported by the external login and level-sync flow.

    Skill levels and profile fields are overwritten on every sync;
    ``elo_interno`` is left to the RatingLedger.
    """

    def upsert(
        self,
        player_id: str,
        nickname: str,
        steam_id: Optional[str] = None,
        faceit_level: int = 0,
        gc_level: int = 0,
        avatar_url: Optional[str] = None
    ) -> Player:
        player_id = validate_id(player_id, 'player_id')
        if not isinstance(nickname, str) or not nickname.strip():
            raise ValidationError("nickname is required")
        nickname = nickname.strip()
        if len(nickname) > MAX_NICKNAME_LENGTH:
            raise ValidationError(f"nickname longer than {MAX_NICKNAME_LENGTH} characters")
        steam_id = self._text(steam_id, 'steam_id', 32)
        avatar_url = self._text(avatar_url, 'avatar_url', 500)
        faceit_level = self._level(faceit_level, 'faceit_level')
        gc_level = self._level(gc_level, 'gc_level')

        try:
            with store_errors(allow_integrity=True):
                player = db.session.get(Player, player_id)
                if player:
                    player.nickname = nickname
                    player.steam_id = steam_id or player.steam_id
                    player.faceit_level = faceit_level
                    player.gc_level = gc_level
                    player.avatar_url = avatar_url or player.avatar_url
                else:
                    player = Player(
                        id=player_id,
                        nickname=nickname,
                        steam_id=steam_id,
                        faceit_level=faceit_level,
                        gc_level=gc_level,
                        avatar_url=avatar_url,
                        elo_interno=0
                    )
                    db.session.add(player)
                db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError("steam_id already linked to another player", {"steam_id": steam_id})

        logger.debug(f"Synced player {player_id} (faceit {faceit_level}, gc {gc_level})")
        return player

    def get_player(self, player_id: str) -> Player:
        return load_player(player_id)

    def leaderboard(self, limit: int = 50) -> List[dict]:
        """Players ranked by internal rating, with 1-based positions."""
        with store_errors():
            players = Player.query.order_by(Player.elo_interno.desc(), Player.nickname).limit(limit).all()

        standings = []
        for i, p in enumerate(players):
            entry = p.to_dict()
            entry['position'] = i + 1
            standings.append(entry)
        return standings

    def match_history(self, player_id: str, limit: int = 20) -> List[Mix]:
        """Finished mixes the player took part in, newest first."""
        player = load_player(player_id)
        with store_errors():
            return self._finished_query(player.id).order_by(Mix.finished_at.desc()).limit(limit).all()

    def career(self, player_id: str) -> dict:
        """Win rate over finished mixes plus K/D and ADR over recorded scoreboards."""
        player = load_player(player_id)
        with store_errors():
            finished = self._finished_query(player.id).all()
            lines = MatchStat.query.filter_by(player_id=player.id).all()

        wins = sum(1 for m in finished if player.id in (m.team_a if m.winner == 'A' else m.team_b))
        kills = sum(line.kills for line in lines)
        deaths = sum(line.deaths for line in lines)

        return {
            'player_id': player.id,
            'played': len(finished),
            'wins': wins,
            'win_rate': round(wins / len(finished), 3) if finished else None,
            'kd': round(kills / max(deaths, 1), 2) if lines else None,
            'adr': round(sum(line.adr for line in lines) / len(lines), 1) if lines else None,
        }

    def _finished_query(self, player_id: str):
        return (
            Mix.query
            .join(MixParticipant, MixParticipant.mix_id == Mix.id)
            .filter(
                MixParticipant.player_id == player_id,
                Mix.status == MixStatus.FINISHED.value
            )
        )

    def _level(self, value, field_name: str) -> int:
        try:
            level = int(value or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"{field_name} must be an integer")
        if level < 0 or level > MAX_LEVEL:
            raise ValidationError(f"{field_name} out of range")
        return level

    def _text(self, value, field_name: str, max_length: int) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string")
        if len(value.strip()) > max_length:
            raise ValidationError(f"{field_name} longer than {max_length} characters")
        return value.strip() or None
