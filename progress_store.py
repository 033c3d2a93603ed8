"""
JSON document persistence for sessions, error logs, assessments and learner memory.

One file per record under DATA_DIR. Writes go to a temp file first and are
moved into place with os.replace, so a reader never sees a half-written
document. Learner memory carries a version number; save_memory refuses to
overwrite a newer document than the one the caller read.
"""

import json
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

from pydantic import BaseModel

import config
from errors import ConcurrentUpdateError, InvalidStateError
from learner_model import (
    Assessment,
    ErrorLogEntry,
    LearnerLanguage,
    LearnerMemory,
    Session,
    utcnow,
)

M = TypeVar("M", bound=BaseModel)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", part)


def _pair_key(learner_id: str, language_code: str) -> str:
    return f"{_safe(learner_id)}__{_safe(language_code)}"


def _in_range(value: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


class JsonProgressStore:
    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR
        self._memory_lock = threading.RLock()

    # -- file plumbing --------------------------------------------------------

    def _dir(self, name: str) -> Path:
        path = self.data_dir / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _write(self, path: Path, record: BaseModel) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(record.model_dump_json(indent=2))
        os.replace(tmp, path)

    def _read(self, path: Path, model: type[M]) -> Optional[M]:
        if not path.exists():
            return None
        return model.model_validate(json.loads(path.read_text()))

    def _read_all(self, name: str, model: type[M]) -> list[M]:
        return [
            model.model_validate(json.loads(p.read_text()))
            for p in sorted(self._dir(name).glob("*.json"))
        ]

    # -- sessions -------------------------------------------------------------

    def save_session(self, session: Session) -> Session:
        self._write(self._dir("sessions") / f"{_safe(session.id)}.json", session)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._read(self._dir("sessions") / f"{_safe(session_id)}.json", Session)

    def list_sessions(
        self,
        learner_id: Optional[str] = None,
        language_code: Optional[str] = None,
        scenario_id: Optional[str] = None,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Session]:
        """Sessions matching every given filter, newest first."""
        sessions = [
            s for s in self._read_all("sessions", Session)
            if (learner_id is None or s.learner_id == learner_id)
            and (language_code is None or s.language_code == language_code)
            and (scenario_id is None or s.scenario_id == scenario_id)
            and (status is None or s.status == status)
            and _in_range(s.started_at, start, end)
        ]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return sessions

    # -- error logs -----------------------------------------------------------

    def save_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        self._write(self._dir("error_logs") / f"{_safe(entry.id)}.json", entry)
        return entry

    def get_error_log(self, error_id: str) -> Optional[ErrorLogEntry]:
        return self._read(self._dir("error_logs") / f"{_safe(error_id)}.json", ErrorLogEntry)

    def list_error_logs(
        self,
        learner_id: Optional[str] = None,
        language_code: Optional[str] = None,
        session_id: Optional[str] = None,
        category: Optional[str] = None,
        corrected: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ErrorLogEntry]:
        """Error logs matching every given filter, newest first."""
        logs = [
            e for e in self._read_all("error_logs", ErrorLogEntry)
            if (learner_id is None or e.learner_id == learner_id)
            and (language_code is None or e.language_code == language_code)
            and (session_id is None or e.session_id == session_id)
            and (category is None or e.category == category)
            and (corrected is None or e.corrected == corrected)
            and _in_range(e.timestamp, start, end)
        ]
        logs.sort(key=lambda e: e.timestamp, reverse=True)
        return logs

    # -- assessments ----------------------------------------------------------

    def save_assessment(self, assessment: Assessment) -> Assessment:
        path = self._dir("assessments") / f"{_safe(assessment.id)}.json"
        if path.exists():
            raise InvalidStateError(f"Assessment {assessment.id} already exists and is immutable")
        self._write(path, assessment)
        return assessment

    def get_assessment(self, assessment_id: str) -> Optional[Assessment]:
        return self._read(self._dir("assessments") / f"{_safe(assessment_id)}.json", Assessment)

    def list_assessments(
        self,
        learner_id: Optional[str] = None,
        language_code: Optional[str] = None,
        type: Optional[str] = None,
        module_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Assessment]:
        """Assessments matching every given filter, newest first."""
        assessments = [
            a for a in self._read_all("assessments", Assessment)
            if (learner_id is None or a.learner_id == learner_id)
            and (language_code is None or a.language_code == language_code)
            and (type is None or a.type == type)
            and (module_id is None or a.module_id == module_id)
            and _in_range(a.created_at, start, end)
        ]
        assessments.sort(key=lambda a: a.created_at, reverse=True)
        return assessments

    # -- learner memory -------------------------------------------------------

    def _memory_path(self, learner_id: str, language_code: str) -> Path:
        return self._dir("memory") / f"{_pair_key(learner_id, language_code)}.json"

    def get_memory(self, learner_id: str, language_code: str) -> Optional[LearnerMemory]:
        return self._read(self._memory_path(learner_id, language_code), LearnerMemory)

    def load_memory(self, learner_id: str, language_code: str) -> LearnerMemory:
        """Stored memory, or a fresh version-0 document when none exists yet."""
        memory = self.get_memory(learner_id, language_code)
        if memory is None:
            return LearnerMemory(learner_id=learner_id, language_code=language_code)
        return memory

    def save_memory(self, memory: LearnerMemory, expected_version: int) -> LearnerMemory:
        with self._memory_lock:
            current = self.get_memory(memory.learner_id, memory.language_code)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise ConcurrentUpdateError(
                    f"Memory for {memory.learner_id}/{memory.language_code} is at version "
                    f"{current_version}, expected {expected_version}"
                )
            saved = memory.model_copy(
                update={"version": expected_version + 1, "updated_at": utcnow()}
            )
            self._write(self._memory_path(memory.learner_id, memory.language_code), saved)
            return saved

    def update_memory(
        self,
        learner_id: str,
        language_code: str,
        mutate: Callable[[LearnerMemory], None],
    ) -> LearnerMemory:
        """Atomic read-modify-write of one learner memory document."""
        with self._memory_lock:
            memory = self.load_memory(learner_id, language_code)
            expected = memory.version
            mutate(memory)
            return self.save_memory(memory, expected)

    # -- learner languages ----------------------------------------------------

    def get_learner_language(self, learner_id: str, language_code: str) -> Optional[LearnerLanguage]:
        path = self._dir("learners") / f"{_pair_key(learner_id, language_code)}.json"
        return self._read(path, LearnerLanguage)

    def save_learner_language(self, record: LearnerLanguage) -> LearnerLanguage:
        path = self._dir("learners") / f"{_pair_key(record.learner_id, record.language_code)}.json"
        self._write(path, record)
        return record


# ---------------------------------------------------------------------------
# Curriculum lookups
# ---------------------------------------------------------------------------

class CurriculumDirectory(Protocol):
    def module_title(self, module_id: str) -> Optional[str]: ...

    def scenario_title(self, scenario_id: str) -> Optional[str]: ...

    def scenario_exists(self, scenario_id: str) -> bool: ...

    def count_modules(self, language_code: str) -> int: ...


class StaticCurriculum:
    """Curriculum names keyed by id. Module ids are prefixed '<language>:'."""

    def __init__(
        self,
        modules: Optional[dict[str, str]] = None,
        scenarios: Optional[dict[str, str]] = None,
    ):
        self.modules = dict(modules or {})
        self.scenarios = dict(scenarios or {})

    @classmethod
    def from_json(cls, path: Path) -> "StaticCurriculum":
        data = json.loads(Path(path).read_text())
        return cls(modules=data.get("modules"), scenarios=data.get("scenarios"))

    def module_title(self, module_id: str) -> Optional[str]:
        return self.modules.get(module_id)

    def scenario_title(self, scenario_id: str) -> Optional[str]:
        return self.scenarios.get(scenario_id)

    def scenario_exists(self, scenario_id: str) -> bool:
        return scenario_id in self.scenarios

    def count_modules(self, language_code: str) -> int:
        prefix = f"{language_code}:"
        return sum(1 for module_id in self.modules if module_id.startswith(prefix))
