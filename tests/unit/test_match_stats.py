"""
Unit tests for the match scoreboard and MVP selection.
"""
import pytest

from mixlobby.match_stats import StatLine, calculate_mvp_score, pick_mvp
from mixlobby.models import MatchStat
from shared.errors import AuthorizationError, ConflictError, ValidationError


def line(player_id, kills=10, assists=0, deaths=10, adr=70.0, **extra):
    return dict(player_id=player_id, kills=kills, assists=assists, deaths=deaths, adr=adr, **extra)


class TestMvpScore:

    def test_weights(self):
        stat = StatLine('p1', kills=20, assists=4, deaths=10, adr=80.0)
        assert calculate_mvp_score(stat) == pytest.approx(20 + 2 + 160 - 3)

    def test_highest_score_wins(self):
        lines = [
            StatLine('p1', kills=15, deaths=10, adr=70.0),
            StatLine('p2', kills=25, deaths=12, adr=95.0),
            StatLine('p3', kills=30, deaths=20, adr=60.0),
        ]
        assert pick_mvp(lines).player_id == 'p2'

    def test_tie_keeps_first(self):
        lines = [StatLine('first', kills=10, adr=50.0), StatLine('second', kills=10, adr=50.0)]
        assert pick_mvp(lines).player_id == 'first'

    def test_no_lines(self):
        assert pick_mvp([]) is None

    def test_kdr_defaults_from_kills_and_deaths(self):
        assert StatLine('p1', kills=21, deaths=12).kdr == 1.75
        assert StatLine('p1', kills=7, deaths=0).kdr == 7.0
        assert StatLine('p1', kills=7, deaths=0, kdr=2.5).kdr == 2.5


class TestRecordStats:

    def test_record_sheet(self, db_session, registry, finished_mix, players, team_ids, mock_redis):
        team_a, team_b = team_ids(finished_mix)
        lines = [line(pid) for pid in team_a + team_b]
        lines[3] = line(lines[3]['player_id'], kills=31, deaths=9, adr=120.4)
        mock_redis.publish.reset_mock()

        sheet = registry.stats.record(finished_mix, players[0], 13, 7, lines)

        assert sheet.score_a == 13
        assert sheet.score_b == 7
        assert sheet.mvp == lines[3]['player_id']
        assert len(sheet.lines) == 10
        assert [row['player_id'] for row in sheet.lines if row['is_mvp']] == [sheet.mvp]
        assert registry.get_mix(finished_mix).to_dict()['score_a'] == 13
        mock_redis.publish.assert_called_once()

    def test_resubmission_replaces_sheet(self, db_session, registry, finished_mix, players, team_ids):
        team_a, team_b = team_ids(finished_mix)
        registry.stats.record(finished_mix, players[0], 13, 7, [line(pid) for pid in team_a + team_b])

        sheet = registry.stats.record(finished_mix, players[0], 16, 14, [
            line(team_b[0], kills=12),
            line(team_a[0], kills=28, adr=101.0),
        ])

        assert MatchStat.query.filter_by(mix_id=finished_mix).count() == 2
        assert sheet.mvp == team_a[0]
        assert (sheet.score_a, sheet.score_b) == (16, 14)

    def test_kdr_stored(self, db_session, registry, finished_mix, players, team_ids):
        team_a, _ = team_ids(finished_mix)
        sheet = registry.stats.record(finished_mix, players[0], 13, 7, [
            line(team_a[0], kills=20, deaths=8),
            line(team_a[1], kdr=0.9),
        ])

        assert [row['kdr'] for row in sheet.lines] == [2.5, 0.9]

    def test_mix_not_finished(self, db_session, registry, live_mix, players, team_ids):
        team_a, _ = team_ids(live_mix)
        with pytest.raises(ConflictError):
            registry.stats.record(live_mix, players[0], 13, 7, [line(team_a[0])])

    def test_only_creator(self, db_session, registry, finished_mix, players, team_ids):
        team_a, _ = team_ids(finished_mix)
        with pytest.raises(AuthorizationError):
            registry.stats.record(finished_mix, players[5], 13, 7, [line(team_a[0])])

    def test_outsider_line_rejected(self, db_session, registry, finished_mix, players, make_player):
        with pytest.raises(ValidationError):
            registry.stats.record(finished_mix, players[0], 13, 7, [line(make_player('outsider'))])
        assert MatchStat.query.filter_by(mix_id=finished_mix).count() == 0

    def test_duplicate_line_rejected(self, db_session, registry, finished_mix, players, team_ids):
        team_a, _ = team_ids(finished_mix)
        with pytest.raises(ValidationError):
            registry.stats.record(finished_mix, players[0], 13, 7, [line(team_a[0]), line(team_a[0])])

    @pytest.mark.parametrize("score_a,score_b", [(7, 13), (10, 10), (13, -1), (13, True), (100, 7)])
    def test_score_must_agree_with_winner(self, db_session, registry, finished_mix, players, team_ids,
                                          score_a, score_b):
        team_a, _ = team_ids(finished_mix)
        with pytest.raises(ValidationError):
            registry.stats.record(finished_mix, players[0], score_a, score_b, [line(team_a[0])])

    @pytest.mark.parametrize("field,value", [
        ('kills', -1),
        ('kills', True),
        ('deaths', 2.5),
        ('adr', 'fast'),
        ('adr', float('inf')),
        ('kdr', -0.5),
    ])
    def test_bad_line_values(self, db_session, registry, finished_mix, players, team_ids, field, value):
        team_a, _ = team_ids(finished_mix)
        bad = line(team_a[0])
        bad[field] = value
        with pytest.raises(ValidationError):
            registry.stats.record(finished_mix, players[0], 13, 7, [bad])

    @pytest.mark.parametrize("players_payload", [None, [], {'player_id': 'x'}, ['not-a-line']])
    def test_lines_must_be_a_list_of_objects(self, db_session, registry, finished_mix, players, players_payload):
        with pytest.raises(ValidationError):
            registry.stats.record(finished_mix, players[0], 13, 7, players_payload)

    def test_empty_sheet(self, db_session, registry, finished_mix):
        sheet = registry.stats.sheet(finished_mix)
        assert sheet.to_dict() == {
            'mix_id': finished_mix,
            'score_a': None,
            'score_b': None,
            'players': [],
            'mvp': None,
        }
