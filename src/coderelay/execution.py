import os
import tempfile
from enum import Enum

from pydantic import BaseModel, Field, field_serializer, model_validator


DEFAULT_WORKING_DIR = os.path.join(tempfile.gettempdir(), "coderelay-sandbox")


class Language(Enum):
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    SHELL = "shell"
    AUTO = "auto"


class SandboxConfig(BaseModel):
    """Limits applied to a single execution.

    Immutable once built; backends receive the same instance the caller
    passed in.

    Args:
        timeout_ms: Wall-clock budget from invocation to forced termination.
        max_memory_mb: Address-space limit for the child process.
        working_dir: Directory the child runs in. Created when missing.
        env: Extra environment variables. Nothing from the host environment
            is inherited apart from ``PATH`` and ``LANG``.
        allow_network: Whether the code may use the network.
        read_only: When set, the child may not write regular files.
    """

    model_config = {"frozen": True}

    timeout_ms: int = Field(default=30_000, gt=0)
    max_memory_mb: int = Field(default=512, gt=0)
    working_dir: str = DEFAULT_WORKING_DIR
    env: dict[str, str] = Field(default_factory=dict)
    allow_network: bool = False
    read_only: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class ExecutionRequest(BaseModel):
    code: str
    language: Language = Language.AUTO
    config: SandboxConfig = Field(default_factory=SandboxConfig)

    @field_serializer("language")
    def serialize_language(self, language: Language, _info) -> str:
        return language.value


class ExecutionResult(BaseModel):
    """Uniform outcome of every backend.

    ``error`` is set if and only if ``exit_code`` is non-zero. A failed
    result built without an explicit error gets one derived from stderr.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    error: str | None = None

    @model_validator(mode="after")
    def _error_tracks_exit_code(self):
        if self.exit_code == 0:
            self.error = None
        elif not self.error:
            last_line = self.stderr.strip().splitlines()[-1:] or [""]
            self.error = last_line[0] or f"exited with status {self.exit_code}"
        return self

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def failure(cls, error: str, stderr: str | None = None, duration_ms: int = 0):
        return cls(
            stdout="",
            stderr=error if stderr is None else stderr,
            exit_code=1,
            duration_ms=duration_ms,
            error=error,
        )

    @classmethod
    def timeout(cls, timeout_ms: int, stdout: str = "", duration_ms: int = 0):
        return cls(
            stdout=stdout,
            stderr=f"Execution timed out after {timeout_ms} ms",
            exit_code=1,
            duration_ms=duration_ms,
            error="timeout",
        )
