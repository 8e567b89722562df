"""
Unit tests for VetoCoordinator.
Tests turn order, map locking, and ban races.
"""
import pytest
from types import SimpleNamespace
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from mixlobby.models import MapBan, Mix
from mixlobby.veto import VetoState, turn_for
from shared.errors import AuthorizationError, ConflictError, ValidationError

POOL = ['de_mirage', 'de_dust2', 'de_inferno', 'de_nuke', 'de_ancient', 'de_anubis', 'de_overpass']


@pytest.fixture
def teams(team_ids, sorting_mix):
    return team_ids(sorting_mix)


class TestTurnOrder:

    @pytest.mark.parametrize("count,side", [(0, 'A'), (1, 'B'), (2, 'A'), (5, 'B'), (6, 'A')])
    def test_turn_for(self, count, side):
        assert turn_for(count) == side

    def test_state_turn(self):
        state = VetoState(mix_id='m', status='sorting', banned_maps=['de_mirage'])
        assert state.turn == 'B'

        state.final_map = 'de_overpass'
        assert state.turn is None


class TestBan:

    def test_open_veto(self, db_session, registry, sorting_mix):
        state = registry.veto.get_state(sorting_mix)
        assert state.banned_maps == []
        assert state.remaining_maps == POOL
        assert state.turn == 'A'
        assert state.final_map is None

    def test_alternating_bans_lock_last_map(self, db_session, registry, sorting_mix, teams):
        team_a, team_b = teams

        for i, map_id in enumerate(POOL[:-1]):
            side = team_a if i % 2 == 0 else team_b
            state = registry.veto.ban(sorting_mix, map_id, side[i % 5])

        assert state.banned_maps == POOL[:-1]
        assert state.final_map == 'de_overpass'
        assert state.status == 'live'
        assert state.turn is None
        assert registry.get_mix(sorting_mix).status == 'live'

    def test_final_map_follows_pool_order(self, db_session, registry, sorting_mix, teams):
        team_a, team_b = teams
        order = ['de_overpass', 'de_anubis', 'de_mirage', 'de_dust2', 'de_nuke', 'de_ancient']

        for i, map_id in enumerate(order):
            side = team_a if i % 2 == 0 else team_b
            state = registry.veto.ban(sorting_mix, map_id, side[0])

        assert state.final_map == 'de_inferno'
        assert [b.position for b in registry.get_mix(sorting_mix).bans] == list(range(6))

    def test_wrong_turn_rejected(self, db_session, registry, sorting_mix, teams):
        _, team_b = teams
        with pytest.raises(AuthorizationError) as exc_info:
            registry.veto.ban(sorting_mix, 'de_mirage', team_b[0])

        assert exc_info.value.details == {"turn": "A", "side": "B"}
        assert registry.veto.get_state(sorting_mix).banned_maps == []

    def test_non_member_rejected(self, db_session, registry, sorting_mix, make_player):
        with pytest.raises(AuthorizationError):
            registry.veto.ban(sorting_mix, 'de_mirage', make_player('spectator'))

    def test_duplicate_ban_is_noop(self, db_session, registry, sorting_mix, teams, mock_redis):
        team_a, team_b = teams
        registry.veto.ban(sorting_mix, 'de_nuke', team_a[0])
        mock_redis.publish.reset_mock()

        # Re-delivery from either side, even out of turn
        state = registry.veto.ban(sorting_mix, 'de_nuke', team_a[0])

        assert state.banned_maps == ['de_nuke']
        assert state.turn == 'B'
        assert MapBan.query.filter_by(mix_id=sorting_mix).count() == 1
        mock_redis.publish.assert_not_called()

    def test_unknown_map(self, db_session, registry, sorting_mix, teams):
        with pytest.raises(ValidationError):
            registry.veto.ban(sorting_mix, 'de_cache', teams[0][0])

    def test_stale_expected_count(self, db_session, registry, sorting_mix, teams):
        team_a, team_b = teams
        registry.veto.ban(sorting_mix, 'de_mirage', team_a[0], expected_count=0)

        with pytest.raises(ConflictError) as exc_info:
            registry.veto.ban(sorting_mix, 'de_dust2', team_b[0], expected_count=0)

        assert exc_info.value.details['ban_count'] == 1
        state = registry.veto.ban(sorting_mix, 'de_dust2', team_b[0], expected_count=1)
        assert state.banned_maps == ['de_mirage', 'de_dust2']

    def test_ban_publishes_change(self, db_session, registry, sorting_mix, teams, mock_redis):
        registry.veto.ban(sorting_mix, 'de_mirage', teams[0][0])

        channel, payload = mock_redis.publish.call_args[0]
        assert channel == f'mix:{sorting_mix}:changes'
        assert 'mix.changed' in payload


class TestBanClosed:

    def test_ban_in_live_conflicts(self, db_session, registry, live_mix, team_ids):
        team_a, _ = team_ids(live_mix)
        with pytest.raises(ConflictError):
            registry.veto.ban(live_mix, 'de_overpass', team_a[0])

        state = registry.veto.get_state(live_mix)
        assert state.final_map == 'de_overpass'
        assert len(state.banned_maps) == 6

    def test_ban_in_finished_conflicts(self, db_session, registry, live_mix, creator_id, team_ids):
        registry.finalize(live_mix, creator_id, 'A')
        team_a, _ = team_ids(live_mix)

        with pytest.raises(ConflictError):
            registry.veto.ban(live_mix, 'de_mirage', team_a[0])


class TestBanBeforeTeams:
    """Before balancing only the creator may ban."""

    def test_creator_can_ban(self, db_session, registry, sample_mix, creator_id):
        state = registry.veto.ban(sample_mix, 'de_dust2', creator_id)
        assert state.banned_maps == ['de_dust2']
        assert state.status == 'waiting'

    def test_other_player_cannot_ban(self, db_session, registry, sample_mix, players):
        registry.slots.join(sample_mix, players[1])
        with pytest.raises(AuthorizationError):
            registry.veto.ban(sample_mix, 'de_dust2', players[1])

    def test_waiting_never_locks_map(self, db_session, registry, sample_mix, creator_id):
        for map_id in POOL[:-1]:
            registry.veto.ban(sample_mix, map_id, creator_id)

        state = registry.veto.get_state(sample_mix)
        assert state.status == 'waiting'
        assert state.final_map is None

        with pytest.raises(ConflictError):
            registry.veto.ban(sample_mix, 'de_overpass', creator_id)

    def test_balance_clears_early_bans(self, db_session, registry, full_mix, creator_id):
        registry.veto.ban(full_mix, 'de_dust2', creator_id)
        registry.balance(full_mix, creator_id)

        state = registry.veto.get_state(full_mix)
        assert state.banned_maps == []
        assert state.turn == 'A'


class TestBanRace:
    """A competing ban landing between read and insert."""

    def test_lost_position_conflicts(self, db_session, registry, sorting_mix, teams, mocker):
        team_a, _ = teams
        mocker.patch.object(
            registry.veto,
            '_insert_ban',
            side_effect=IntegrityError('INSERT', {}, Exception('unique_ban_position'))
        )

        with pytest.raises(ConflictError):
            registry.veto.ban(sorting_mix, 'de_mirage', team_a[0])

    def test_same_map_race_is_noop(self, db_session, registry, sorting_mix, teams, mocker):
        """The competing request banned the very same map."""
        team_a, _ = teams

        def other_request_won(mix, position, map_id, player_id):
            db_session.add(MapBan(mix_id=mix.id, position=position, map_id=map_id, banned_by=player_id))
            db_session.commit()
            raise IntegrityError('INSERT', {}, Exception('unique_ban_position'))

        mocker.patch.object(registry.veto, '_insert_ban', side_effect=other_request_won)
        state = registry.veto.ban(sorting_mix, 'de_mirage', team_a[0])

        assert state.banned_maps == ['de_mirage']

    def test_status_moved_under_ban(self, db_session, registry, sorting_mix, teams):
        """The guarded touch fails if the mix left the status that was read."""
        team_a, _ = teams
        stale = SimpleNamespace(id=sorting_mix, status='sorting')
        db_session.execute(
            update(Mix).where(Mix.id == sorting_mix).values(status='live', final_map='de_nuke')
        )
        db_session.commit()

        with pytest.raises(ConflictError):
            registry.veto._insert_ban(stale, 0, 'de_mirage', team_a[0])
        assert MapBan.query.filter_by(mix_id=sorting_mix).count() == 0


class TestLockMap:

    def test_lock_only_once(self, db_session, registry, live_mix):
        assert registry.veto.lock_map(live_mix) is False
        assert registry.get_mix(live_mix).final_map == 'de_overpass'

    def test_exhausted_bans_in_sorting_are_repaired(self, db_session, registry, sorting_mix, teams):
        """Six bans without a lock (crash between writes) get locked on the next ban."""
        team_a, team_b = teams
        for i, map_id in enumerate(POOL[:-1]):
            db_session.add(MapBan(mix_id=sorting_mix, position=i, map_id=map_id))
        db_session.commit()

        state = registry.veto.ban(sorting_mix, 'de_overpass', team_a[0])

        assert state.status == 'live'
        assert state.final_map == 'de_overpass'
