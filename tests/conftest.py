"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages, and
provides workspace, coordinator and capability fixtures shared by the suites.
"""

import sys
import textwrap
import time
import zlib
from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any

import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local codeweave package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from codeweave.config.loader import load_config  # noqa: E402
from codeweave.config.models import CodeWeaveConfig  # noqa: E402
from codeweave.index.embedding import word_split  # noqa: E402
from codeweave.index.ops import IndexCoordinator  # noqa: E402
from codeweave.query.capabilities import Embedder, Reranker  # noqa: E402

NO_CAPABILITIES: dict[str, Any] = {
    "embedding": {"provider": "none"},
    "rerank": {"provider": "none"},
}


class KeywordEmbedder(Embedder):
    """Deterministic bag-of-words embedder: one hashed bucket per word."""

    model_name = "test-keyword"
    dim = 32

    def __init__(self) -> None:
        self.calls = 0

    def embed_batch(self, texts: Sequence[str]) -> Any:
        self.calls += 1
        return [self.vector(t) for t in texts]

    @classmethod
    def vector(cls, text: str) -> list[float]:
        v = [0.0] * cls.dim
        v[0] = 0.01
        for word in word_split(text):
            v[zlib.crc32(word.encode()) % (cls.dim - 1) + 1] += 1.0
        return v


class CrashingEmbedder(KeywordEmbedder):
    """Backend whose runtime fails on every call."""

    def embed_batch(self, texts: Sequence[str]) -> Any:
        raise RuntimeError("onnx session crashed")


class HangingEmbedder(KeywordEmbedder):
    """Backend that blocks for ``delay`` seconds before answering."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def embed_batch(self, texts: Sequence[str]) -> Any:
        time.sleep(self.delay)
        return super().embed_batch(texts)


class ScriptedReranker(Reranker):
    """Reranker whose scores come from ``script(intent, documents)``.

    Without a script, a document scores the number of intent words it contains.
    """

    model_name = "test-rerank"

    def __init__(self, script: Callable[[str, list[str]], Any] | None = None) -> None:
        self.script = script
        self.calls: list[list[str]] = []

    def score_batch(self, intent: str, documents: Sequence[str]) -> Any:
        docs = list(documents)
        self.calls.append(docs)
        if self.script is not None:
            return self.script(intent, docs)
        wanted = set(word_split(intent))
        return [float(len(wanted & set(word_split(d)))) for d in docs]


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty workspace root."""
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def write_files(workspace: Path) -> Callable[[dict[str, str]], None]:
    """Write {relative path: source} into the workspace, dedenting each source."""

    def _write(files: dict[str, str]) -> None:
        for rel, content in files.items():
            path = workspace / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(content).lstrip("\n"))

    return _write


@pytest.fixture
def make_config(workspace: Path) -> Callable[..., CodeWeaveConfig]:
    """Config for the workspace with capabilities off unless overridden."""

    def _make(**overrides: Any) -> CodeWeaveConfig:
        return load_config(workspace, **{**NO_CAPABILITIES, **overrides})

    return _make


@pytest.fixture
def coordinator(
    workspace: Path, make_config: Callable[..., CodeWeaveConfig]
) -> Generator[IndexCoordinator, None, None]:
    coord = IndexCoordinator(workspace, make_config())
    yield coord
    coord.close()


@pytest.fixture
def keyword_embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def scripted_reranker() -> type[ScriptedReranker]:
    """The ScriptedReranker class; tests construct it with their own script."""
    return ScriptedReranker
