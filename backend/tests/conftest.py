"""
Pytest configuration and fixtures for testing.
"""

from typing import Any, Callable, Dict, Generator, List, Optional
from unittest.mock import Mock

import pytest
from sqlalchemy.engine import Engine

from trustpipe.agents.base_agent import ClaudeClient
from trustpipe.config import PipelineConfig
from trustpipe.db.database import build_engine, get_session_factory, init_db
from trustpipe.schemas.claim import Claim, Evidence, FactCheck
from trustpipe.schemas.content import CommentDocument, PostDocument
from trustpipe.services.document_store import DocumentStore


@pytest.fixture
def test_engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed SQLite database, one per test."""
    engine = build_engine(f"sqlite:///{tmp_path / 'trustpipe.db'}")
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def store(test_engine: Engine) -> DocumentStore:
    return DocumentStore(get_session_factory(test_engine))


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Pipeline configuration without backoff delays or web search."""
    return PipelineConfig(
        web_search_enabled=False,
        retry_base_delay_seconds=0.0,
        run_side_effects_inline=True,
    )


def _fake_client(available: bool, model: str) -> Mock:
    client = Mock(spec=ClaudeClient)
    client.model = model
    client.is_available.return_value = available
    return client


@pytest.fixture
def fake_client() -> Mock:
    """Text-only client whose generate() replies are set per test."""
    return _fake_client(True, "claude-test")


@pytest.fixture
def fake_vision_client() -> Mock:
    return _fake_client(True, "claude-vision-test")


@pytest.fixture
def unavailable_client() -> Mock:
    """Client without credentials."""
    return _fake_client(False, "claude-test")


def _anthropic_response(text: str) -> Mock:
    response = Mock()
    block = Mock()
    block.type = "text"
    block.text = text
    response.content = [block]
    response.usage.input_tokens = 100
    response.usage.output_tokens = 50
    return response


@pytest.fixture
def anthropic_response() -> Callable[[str], Mock]:
    """Factory for mock Messages API responses with one text block."""
    return _anthropic_response


@pytest.fixture
def mock_anthropic_client() -> Mock:
    """Mock Anthropic client for testing."""
    mock_client = Mock()
    mock_client.messages.create.return_value = _anthropic_response('{"summary": "Test response from Claude"}')
    return mock_client


@pytest.fixture
def make_post() -> Callable[..., PostDocument]:
    def factory(post_id: str = "post-1", text: str = "", **kwargs: Any) -> PostDocument:
        kwargs.setdefault("author_id", "user-1")
        return PostDocument(id=post_id, text=text, **kwargs)
    return factory


@pytest.fixture
def make_comment() -> Callable[..., CommentDocument]:
    def factory(comment_id: str = "comment-1", post_id: str = "post-1", text: str = "",
                **kwargs: Any) -> CommentDocument:
        kwargs.setdefault("author_id", "user-2")
        return CommentDocument(id=comment_id, post_id=post_id, text=text, **kwargs)
    return factory


@pytest.fixture
def make_claim() -> Callable[..., Claim]:
    def factory(claim_id: str, text: str, **kwargs: Any) -> Claim:
        kwargs.setdefault("type", "fact")
        kwargs.setdefault("confidence", 0.8)
        return Claim(id=claim_id, text=text, **kwargs)
    return factory


@pytest.fixture
def make_fact_check() -> Callable[..., FactCheck]:
    def factory(claim_id: str, verdict: str = "true", confidence: float = 0.9,
                evidence: Optional[List[Dict[str, Any]]] = None) -> FactCheck:
        return FactCheck(
            id=f"{claim_id}-fact-check",
            claim_id=claim_id,
            verdict=verdict,
            confidence=confidence,
            evidence=[Evidence(**item) for item in evidence or []],
        )
    return factory
