import json
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ValidationError

from lockdown.errors import PersistenceFailure
from lockdown.schema import Countdown, DailyWindow
from lockdown.settings import settings
from lockdown.utils.state import write_json_atomic

DAILY_WINDOW = "daily_window"
COUNTDOWN = "countdown"

_MODELS: dict[str, type[BaseModel]] = {
    DAILY_WINDOW: DailyWindow,
    COUNTDOWN: Countdown,
}


class ScheduleStore:
    """Persists the active schedules so alarms can be re-armed after a restart."""

    def __init__(self, path: Path | None = None):
        self.path = path or settings.schedules_file

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"Failed to load schedules: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceFailure(f"Malformed schedules file: {self.path}")
        return data

    def _write(self, data: dict) -> None:
        try:
            write_json_atomic(self.path, data)
        except OSError as e:
            raise PersistenceFailure(f"Failed to save schedules: {e}") from e

    @staticmethod
    def _model_for(key: str) -> type[BaseModel]:
        try:
            return _MODELS[key]
        except KeyError:
            raise KeyError(f"Unknown schedule key: {key}") from None

    def put(self, key: str, value: BaseModel) -> None:
        model = self._model_for(key)
        if not isinstance(value, model):
            raise TypeError(f"{key} expects {model.__name__}, got {type(value).__name__}")
        data = self._read()
        data[key] = value.model_dump(mode="json")
        self._write(data)
        logger.debug(f"Stored {key}: {data[key]}")

    def get(self, key: str):
        model = self._model_for(key)
        raw = self._read().get(key)
        if raw is None:
            return None
        try:
            return model(**raw)
        except (ValidationError, TypeError) as e:
            raise PersistenceFailure(f"Corrupt {key} entry: {e}") from e

    def delete(self, key: str) -> None:
        self._model_for(key)
        data = self._read()
        if key not in data:
            return
        del data[key]
        self._write(data)
        logger.debug(f"Deleted {key}")

    def all(self) -> dict:
        return {key: self.get(key) for key in _MODELS}
