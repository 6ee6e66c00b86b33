# store.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .dag import DependencyGraph
from .errors import ArtifactConflictError, NotFoundError, SecretsFrozenError

logger = logging.getLogger(__name__)

REDACTED = "***"

SCOPE_RUN = "run"
SCOPE_JOB = "job"


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Artifact:
    name: str
    payload: bytes
    producer: str

    @property
    def size(self) -> int:
        return len(self.payload)


class ArtifactStore:
    """
    Run-scoped artifact storage.

    `scope` on put/get is the name of the job doing the write/read. A read
    only succeeds when the artifact's producer is the reader itself or a
    completed job in the reader's dependency closure; anything else could
    race with the reader and is reported as missing. Only the producer may
    overwrite a name, so the job a reader depends on never changes.
    """

    def __init__(self, graph: DependencyGraph, is_completed: Callable[[str], bool]):
        self._graph = graph
        self._is_completed = is_completed
        self._artifacts: Dict[str, Artifact] = {}

    def put(self, name: str, payload: bytes | str, scope: str) -> Artifact:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        if self._is_completed(scope):
            # a thread-based action outliving its cancelled or timed-out step
            raise ArtifactConflictError(f"Job '{scope}' already finished; artifact '{name}' not stored")

        existing = self._artifacts.get(name)
        if existing and existing.producer != scope:
            raise ArtifactConflictError(
                f"Artifact '{name}' already produced by '{existing.producer}'; "
                f"only that job may overwrite it"
            )

        artifact = Artifact(name=name, payload=bytes(payload), producer=scope)
        self._artifacts[name] = artifact
        logger.debug("artifact %s stored by %s (%d bytes)", name, scope, artifact.size)
        return artifact

    def get(self, name: str, scope: str) -> bytes:
        artifact = self._artifacts.get(name)
        if artifact is None:
            raise NotFoundError(f"Artifact '{name}' was never produced")

        producer = artifact.producer
        if producer == scope:
            return artifact.payload
        if not self._graph.is_ancestor(producer, scope):
            raise NotFoundError(
                f"Artifact '{name}' was produced by '{producer}', which '{scope}' does not need"
            )
        if not self._is_completed(producer):
            raise NotFoundError(f"Artifact '{name}' producer '{producer}' has not completed")
        return artifact.payload

    def names(self) -> List[str]:
        return sorted(self._artifacts)

    def artifacts(self) -> List[Artifact]:
        return [self._artifacts[n] for n in self.names()]

    def __len__(self) -> int:
        return len(self._artifacts)


class BoundArtifacts:
    """An ArtifactStore view fixed to one job, handed to step executors."""

    def __init__(self, store: ArtifactStore, job: str):
        self._store = store
        self.job = job

    def put(self, name: str, payload: bytes | str) -> Artifact:
        return self._store.put(name, payload, self.job)

    def get(self, name: str) -> bytes:
        return self._store.get(name, self.job)


# ----------------------------------------------------------------------
# Secrets & variables
# ----------------------------------------------------------------------

class SecretStore:
    """
    Secrets are written once when the run is created and are read-only after
    `freeze()`. Every serialized form of the store is redacted.
    """

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets: Dict[str, str] = {}
        self._frozen = False
        for k, v in (secrets or {}).items():
            self.set(k, v)

    def set(self, name: str, value: str) -> None:
        if self._frozen:
            raise SecretsFrozenError(f"Secrets are read-only once the run starts (tried to set {name!r})")
        if name in self._secrets:
            raise SecretsFrozenError(f"Secret {name!r} is write-once")
        self._secrets[name] = str(value)

    def freeze(self) -> "SecretStore":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise NotFoundError(f"Secret {name!r} is not defined") from None

    def names(self) -> List[str]:
        return sorted(self._secrets)

    def values(self) -> Mapping[str, str]:
        """Plain values for expression evaluation. Never log this."""
        return MappingProxyType(self._secrets)

    def redact(self, text: str) -> str:
        if not text:
            return text
        # longest first so a secret containing another is masked whole
        for value in sorted(self._secrets.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, REDACTED)
        return text

    def to_dict(self) -> Dict[str, str]:
        return {k: REDACTED for k in self.names()}

    def __repr__(self) -> str:
        return f"SecretStore({self.to_dict()!r})"

    def __contains__(self, name: object) -> bool:
        return name in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)


class VariableStore:
    """
    Plain (non-secret) variables. Run-scoped values are visible to every
    job; job-scoped values shadow them for a single job.
    """

    def __init__(self, run_vars: Optional[Mapping[str, str]] = None):
        self._run: Dict[str, str] = {k: str(v) for k, v in (run_vars or {}).items()}
        self._jobs: Dict[str, Dict[str, str]] = {}

    def set(self, name: str, value: str, scope: str = SCOPE_RUN, job: str | None = None) -> None:
        if scope == SCOPE_RUN:
            self._run[name] = str(value)
        elif scope == SCOPE_JOB:
            if not job:
                raise ValueError("job-scoped variables need a job name")
            self._jobs.setdefault(job, {})[name] = str(value)
        else:
            raise ValueError(f"Unknown variable scope: {scope!r}")

    def get(self, name: str, job: str | None = None) -> str:
        if job and name in self._jobs.get(job, {}):
            return self._jobs[job][name]
        if name in self._run:
            return self._run[name]
        raise NotFoundError(f"Variable {name!r} is not defined")

    def resolved(self, job: str | None = None) -> Dict[str, str]:
        out = dict(self._run)
        if job:
            out.update(self._jobs.get(job, {}))
        return out

    def update(self, items: Iterable[tuple[str, str]]) -> None:
        for k, v in items:
            self.set(k, v)
