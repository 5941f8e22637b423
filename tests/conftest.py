"""Pytest configuration and fixtures for CodeGraph Conductor tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest
import pytest_asyncio

from codegraph_conductor.bus import KnowledgeBus
from codegraph_conductor.conductor import Conductor
from codegraph_conductor.config import Settings
from codegraph_conductor.embeddings import HashEmbeddingProvider
from codegraph_conductor.indexer import Indexer
from codegraph_conductor.parser import CodeParser
from codegraph_conductor.storage import GraphStore


@pytest.fixture(autouse=True)
def _isolated_home(temp_dir: Path, monkeypatch):
    """Keep every test away from the real ``~/.codegraph``."""
    home = temp_dir / "home"
    monkeypatch.setenv("CODEGRAPH_HOME", str(home))
    monkeypatch.setattr("codegraph_conductor.config.BASE_DIR", home)
    monkeypatch.setattr("codegraph_conductor.config.MEMORY_DIR", home / "memory")
    monkeypatch.setattr("codegraph_conductor.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.delenv("VOYAGE_API_KEY", raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to sample test project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


@pytest.fixture
def make_project(temp_dir: Path) -> Callable[[Dict[str, str]], Path]:
    """Write ``{relative path: source}`` under a fresh project directory."""
    root = temp_dir / "project"

    def _write(files: Dict[str, str]) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        for rel_path, source in files.items():
            target = root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(source, encoding="utf-8")
        return root

    return _write


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    settings = Settings(data_dir=temp_dir / "store")
    settings.embeddings.dimension = 64
    return settings


@pytest.fixture
def graph_store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """Create a GraphStore with temporary storage."""
    store = GraphStore(temp_dir / "graph")
    yield store
    store.close()


@pytest.fixture
def embedder() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(dimension=64)


@pytest.fixture
def bus() -> KnowledgeBus:
    return KnowledgeBus()


@pytest.fixture
def indexer(graph_store: GraphStore, bus: KnowledgeBus) -> Indexer:
    return Indexer(graph_store, CodeParser(), bus)


@pytest_asyncio.fixture
async def conductor(settings: Settings):
    """A conductor over a temporary store with hash embeddings and no reranker."""
    instance = Conductor(settings)
    yield instance
    await instance.aclose()


@pytest_asyncio.fixture
async def indexed_conductor(conductor: Conductor, sample_project_path: Path):
    """Conductor with the sample project indexed and warmed up."""
    await conductor.submit("index", {"directory": str(sample_project_path)})
    await conductor.drain()
    return conductor


@pytest.fixture
def sample_python_code() -> str:
    """Sample Python code for testing parser."""
    return '''"""Sample module for testing."""

import os
from typing import List as Seq

LIMIT = 10


def hello(name: str) -> str:
    """Say hello."""
    return f"Hello, {name}!"


class Calculator:
    """Simple calculator."""

    def add(self, a: int, b: int) -> int:
        """Add two numbers."""
        return a + b

    def multiply(self, a: int, b: int) -> int:
        """Multiply two numbers."""
        result = self.add(a, 0)  # Call to add
        for _ in range(b - 1):
            result = self.add(result, a)
        return result


class ScientificCalculator(Calculator):
    async def power(self, a: int, b: int) -> int:
        return hello(str(a ** b)) and a ** b
'''
