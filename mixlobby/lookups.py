import uuid
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.errors import NotFoundError, StorageError, ValidationError
from .models import db, Mix, Player


def validate_id(value, kind: str = 'id') -> str:
    """Return ``value`` as a canonical UUID string or raise ValidationError."""
    if not value or not isinstance(value, str):
        raise ValidationError(f"{kind} is required")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise ValidationError(f"Invalid {kind}: {value!r}")


def new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def store_errors(allow_integrity: bool = False):
    """
    Roll back and surface any record store failure as StorageError.

    With ``allow_integrity`` a unique-constraint violation propagates as
    IntegrityError so the caller can treat it as a lost compare-and-swap.
    """
    try:
        yield
    except IntegrityError:
        if allow_integrity:
            raise
        db.session.rollback()
        raise StorageError("Record store rejected the write")
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageError(f"Record store failure: {e}")


def load_mix(mix_id: str) -> Mix:
    mix_id = validate_id(mix_id, 'mix_id')
    with store_errors():
        mix = db.session.get(Mix, mix_id)
    if mix is None:
        raise NotFoundError(f"Mix {mix_id} not found")
    return mix


def load_player(player_id: str) -> Player:
    player_id = validate_id(player_id, 'player_id')
    with store_errors():
        player = db.session.get(Player, player_id)
    if player is None:
        raise NotFoundError(f"Player {player_id} not found")
    return player
