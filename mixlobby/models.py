from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin

db = SQLAlchemy()


class Player(UserMixin, db.Model):
    __tablename__ = 'players'

    id = db.Column(db.String(36), primary_key=True)
    nickname = db.Column(db.String(100), nullable=False)
    steam_id = db.Column(db.String(32), unique=True, nullable=True, index=True)
    faceit_level = db.Column(db.Integer, nullable=False, default=0)
    gc_level = db.Column(db.Integer, nullable=False, default=0)
    elo_interno = db.Column(db.Integer, nullable=False, default=0)  # only RatingLedger writes this
    avatar_url = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_id(self):
        """Return the player ID for Flask-Login request loading."""
        return self.id

    def to_dict(self):
        return {
            'id': self.id,
            'nickname': self.nickname,
            'steam_id': self.steam_id,
            'faceit_level': self.faceit_level,
            'gc_level': self.gc_level,
            'elo_interno': self.elo_interno,
            'avatar_url': self.avatar_url,
        }


class Mix(db.Model):
    __tablename__ = 'mixes'

    id = db.Column(db.String(36), primary_key=True)
    creator_id = db.Column(db.String(36), db.ForeignKey('players.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='waiting', index=True)

    # Player ids; empty until balanced, then five each
    team_a = db.Column(db.JSON, nullable=False, default=list)
    team_b = db.Column(db.JSON, nullable=False, default=list)

    final_map = db.Column(db.String(50), nullable=True)
    server_ip = db.Column(db.String(64), nullable=True)
    winner = db.Column(db.String(1), nullable=True)  # 'A' or 'B', claimed by finalize
    score_a = db.Column(db.Integer, nullable=True)
    score_b = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    finished_at = db.Column(db.DateTime, nullable=True)

    creator = db.relationship('Player')
    participants = db.relationship(
        'MixParticipant',
        back_populates='mix',
        cascade='all, delete-orphan',
        order_by='MixParticipant.slot'
    )
    bans = db.relationship(
        'MapBan',
        back_populates='mix',
        cascade='all, delete-orphan',
        order_by='MapBan.position'
    )
    stats = db.relationship(
        'MatchStat',
        back_populates='mix',
        cascade='all, delete-orphan',
        order_by='MatchStat.id'
    )

    @property
    def banned_maps(self):
        return [b.map_id for b in self.bans]

    @property
    def teams_assigned(self) -> bool:
        return bool(self.team_a) and bool(self.team_b)

    def to_dict(self):
        return {
            'id': self.id,
            'creator_id': self.creator_id,
            'status': self.status,
            'team_a': list(self.team_a or []),
            'team_b': list(self.team_b or []),
            'banned_maps': self.banned_maps,
            'final_map': self.final_map,
            'server_ip': self.server_ip,
            'winner': self.winner,
            'score_a': self.score_a,
            'score_b': self.score_b,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class MixParticipant(db.Model):
    __tablename__ = 'mix_participants'

    id = db.Column(db.Integer, primary_key=True)
    mix_id = db.Column(db.String(36), db.ForeignKey('mixes.id'), nullable=False, index=True)
    player_id = db.Column(db.String(36), db.ForeignKey('players.id'), nullable=False)
    slot = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    mix = db.relationship('Mix', back_populates='participants')
    player = db.relationship('Player')

    __table_args__ = (
        db.UniqueConstraint('mix_id', 'player_id', name='unique_player_per_mix'),
        db.UniqueConstraint('mix_id', 'slot', name='unique_slot_per_mix'),
        db.CheckConstraint('slot >= 0 AND slot < 10', name='slot_in_range'),
    )


class MapBan(db.Model):
    __tablename__ = 'map_bans'

    id = db.Column(db.Integer, primary_key=True)
    mix_id = db.Column(db.String(36), db.ForeignKey('mixes.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    map_id = db.Column(db.String(50), nullable=False)
    banned_by = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    mix = db.relationship('Mix', back_populates='bans')

    # position is the compare-and-swap key: one ban per turn
    __table_args__ = (
        db.UniqueConstraint('mix_id', 'position', name='unique_ban_position'),
        db.UniqueConstraint('mix_id', 'map_id', name='unique_ban_map'),
    )


class RatingCredit(db.Model):
    __tablename__ = 'rating_credits'

    id = db.Column(db.Integer, primary_key=True)
    mix_id = db.Column(db.String(36), db.ForeignKey('mixes.id'), nullable=False, index=True)
    player_id = db.Column(db.String(36), db.ForeignKey('players.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('mix_id', 'player_id', name='unique_credit_per_mix'),
    )


class MatchStat(db.Model):
    """One player's scoreboard line for a finished mix."""
    __tablename__ = 'match_stats'

    id = db.Column(db.Integer, primary_key=True)
    mix_id = db.Column(db.String(36), db.ForeignKey('mixes.id'), nullable=False, index=True)
    player_id = db.Column(db.String(36), db.ForeignKey('players.id'), nullable=False, index=True)
    kills = db.Column(db.Integer, nullable=False, default=0)
    assists = db.Column(db.Integer, nullable=False, default=0)
    deaths = db.Column(db.Integer, nullable=False, default=0)
    adr = db.Column(db.Float, nullable=False, default=0.0)
    kdr = db.Column(db.Float, nullable=False, default=0.0)
    is_mvp = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    mix = db.relationship('Mix', back_populates='stats')
    player = db.relationship('Player')

    __table_args__ = (
        db.UniqueConstraint('mix_id', 'player_id', name='unique_stat_per_mix'),
    )

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'nickname': self.player.nickname if self.player else None,
            'kills': self.kills,
            'assists': self.assists,
            'deaths': self.deaths,
            'adr': self.adr,
            'kdr': self.kdr,
            'is_mvp': self.is_mvp,
        }
