from dataclasses import dataclass, field
from typing import List, Sequence

from shared.errors import InsufficientPlayersError, ValidationError


# Snake draft over the power-sorted list: position i goes to SNAKE_ORDER[i]
SNAKE_ORDER = ('A', 'B', 'B', 'A', 'A', 'B', 'B', 'A', 'A', 'B')


@dataclass
class BalanceResult:
    team_a: list = field(default_factory=list)
    team_b: list = field(default_factory=list)
    diff: float = 0.0

    @property
    def team_a_ids(self) -> List[str]:
        return [p.id for p in self.team_a]

    @property
    def team_b_ids(self) -> List[str]:
        return [p.id for p in self.team_b]

    def to_dict(self) -> dict:
        return {
            'team_a': self.team_a_ids,
            'team_b': self.team_b_ids,
            'diff': self.diff,
        }


class BalancingEngine:
    """
    Splits ten players into two five-player teams by power score.

    power = gc_level * 100 + faceit_level * 50 + elo_interno

    Players are stable-sorted by power descending, so equal-power players
    keep their input (join) order, then dealt out with SNAKE_ORDER. Same
    input in the same order always gives the same teams.
    """

    def __init__(self, gc_weight: int = 100, faceit_weight: int = 50, roster_size: int = 10):
        self.gc_weight = gc_weight
        self.faceit_weight = faceit_weight
        self.roster_size = roster_size

    def power(self, player) -> int:
        return (
            (player.gc_level or 0) * self.gc_weight
            + (player.faceit_level or 0) * self.faceit_weight
            + (getattr(player, 'elo_interno', None) or 0)
        )

    def balance(self, players: Sequence) -> BalanceResult:
        if len(players) != self.roster_size:
            raise InsufficientPlayersError(len(players), self.roster_size)

        ids = [p.id for p in players]
        if len(set(ids)) != len(ids):
            raise ValidationError("Balancing requires distinct players")

        # sorted() is stable: ties keep input order
        ranked = sorted(players, key=self.power, reverse=True)

        team_a, team_b = [], []
        for index, player in enumerate(ranked):
            side = SNAKE_ORDER[index % len(SNAKE_ORDER)]
            (team_a if side == 'A' else team_b).append(player)

        diff = abs(self._average_power(team_a) - self._average_power(team_b))
        return BalanceResult(team_a=team_a, team_b=team_b, diff=diff)

    def calculate_average_level(self, players: Sequence) -> float:
        """Mean power rounded to one decimal; 0 for an empty list."""
        if not players:
            return 0
        return round(self._average_power(players), 1)

    def _average_power(self, players: Sequence) -> float:
        return sum(self.power(p) for p in players) / len(players)
