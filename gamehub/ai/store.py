from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

import redis
from pydantic import ValidationError as SchemaError

from gamehub.ai.model import PersistedModel
from gamehub.errors import PersistenceError

logger = logging.getLogger(__name__)

MODEL_KEY_PREFIX = "gamehub:model:"  # + {game_id}
MODELS_SET_KEY = "gamehub:models"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ModelStore(Protocol):
    """Blocking persistence backend; GameAI calls it off the event loop."""

    def load(self, game_id: str) -> PersistedModel | None:  # pragma: no cover
        ...

    def save(self, model: PersistedModel) -> None:  # pragma: no cover
        ...

    def list_ids(self) -> list[str]:  # pragma: no cover
        ...


def _check_id(game_id: str) -> str:
    if not _SAFE_ID.match(game_id):
        raise PersistenceError(f"Refusing to persist model under unsafe id {game_id!r}")
    return game_id


class FileModelStore:
    """One JSON document per game id under `root`."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def path_for(self, game_id: str) -> Path:
        return self.root / f"{_check_id(game_id)}.json"

    def load(self, game_id: str) -> PersistedModel | None:
        path = self.path_for(game_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("could not read model %s: %s", path, e)
            return None

        try:
            return PersistedModel.model_validate_json(raw)
        except SchemaError as e:
            logger.warning("ignoring unparseable model file %s: %s", path, e)
            return None

    def save(self, model: PersistedModel) -> None:
        path = self.path_for(model.game_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{model.game_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(model.model_dump_json(indent=2))
                # Readers never observe a half-written document.
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to save model {model.game_id}: {e}") from e

    def list_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json") if _SAFE_ID.match(p.stem))


class RedisModelStore:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    @staticmethod
    def key_for(game_id: str) -> str:
        return f"{MODEL_KEY_PREFIX}{_check_id(game_id)}"

    def load(self, game_id: str) -> PersistedModel | None:
        try:
            raw = self.r.get(self.key_for(game_id))
        except redis.RedisError as e:
            logger.warning("could not read model %s from redis: %s", game_id, e)
            return None
        if not raw:
            return None
        try:
            return PersistedModel.model_validate_json(raw)  # type: ignore[arg-type]
        except SchemaError as e:
            logger.warning("ignoring unparseable model %s in redis: %s", game_id, e)
            return None

    def save(self, model: PersistedModel) -> None:
        try:
            pipe = self.r.pipeline()
            pipe.set(self.key_for(model.game_id), model.model_dump_json())
            pipe.sadd(MODELS_SET_KEY, model.game_id)
            pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to save model {model.game_id}: {e}") from e

    def list_ids(self) -> list[str]:
        try:
            return sorted(str(x) for x in self.r.smembers(MODELS_SET_KEY))  # type: ignore[union-attr]
        except redis.RedisError as e:
            logger.warning("could not list models in redis: %s", e)
            return []


def create_model_store(*, kind: str, root: Path, r: redis.Redis | None = None) -> ModelStore:
    if kind == "redis":
        if r is None:
            raise PersistenceError("Redis model store selected but no Redis client is configured")
        return RedisModelStore(r)
    if kind == "file":
        return FileModelStore(root)
    raise PersistenceError(f"Unknown model store: {kind}")
