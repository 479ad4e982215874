import asyncio
import pytest
from typing import List, Optional

from fastapi.testclient import TestClient

from physilink.main import app
from physilink.models.schemas import AnalysisResult, TheoryVerification
from physilink.routers.sessions import get_client, get_store
from physilink.services.analysis_client import AnalysisError
from physilink.services.session_store import SessionStore


ANALYSIS_PAYLOAD = {
    "summary": "A ball thrown upward decelerates at $g$.",
    "concepts": [
        {"name": "Kinematics", "field": "Mechanics", "description": "Motion with $a = g$.",
         "equations": ["v = u + at"], "importance": 8},
        {"name": "Gravity", "field": "Mechanics", "description": "Uniform field.",
         "equations": ["F = mg"], "importance": 6},
    ],
    "realLifeObservations": [
        {"conceptName": "Kinematics", "description": "Thrown keys", "example": "Keys tossed to a friend"},
    ],
    "complexityLevel": 3,
}


class FakeAnalysisClient:
    """Stands in for the provider; records calls."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.analysis_payload = dict(ANALYSIS_PAYLOAD)
        self.verification = TheoryVerification(
            overall_correctness=80, verdict="Minor Errors", feedback="Check the sign of $g$."
        )
        self.error: Optional[Exception] = None
        # illustration requests: tagged with the analysis count when issued
        self.analyses = 0
        self.hold = False
        self.illustration_prompts: List[str] = []
        self.cancelled = 0

    def ready(self) -> bool:
        return True

    async def analyze(self, query, image=None, knowledge_files=(), strict_mode=False):
        self.calls.append(("analyze", query, image, tuple(knowledge_files), strict_mode))
        if self.error:
            raise self.error
        self.analyses += 1
        return AnalysisResult.model_validate(self.analysis_payload)

    async def verify(self, context, user_work, knowledge_files=(), strict_mode=False):
        self.calls.append(("verify", context, user_work, tuple(knowledge_files), strict_mode))
        if self.error:
            raise self.error
        return self.verification

    async def generate_illustration(self, prompt):
        batch = self.analyses
        self.illustration_prompts.append(prompt)
        try:
            while self.hold:
                await asyncio.sleep(0.005)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return f"img{batch}:{prompt}"

    async def aclose(self):
        pass


@pytest.fixture
def fake_client() -> FakeAnalysisClient:
    return FakeAnalysisClient()


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(queue_size=4)


@pytest.fixture
def api(fake_client, session_store):
    """TestClient wired to a fresh store and the fake provider."""
    app.dependency_overrides[get_client] = lambda: fake_client
    app.dependency_overrides[get_store] = lambda: session_store
    with TestClient(app) as tc:
        yield tc
    app.dependency_overrides.clear()


@pytest.fixture
def provider_error() -> AnalysisError:
    return AnalysisError("Couldn't reach the model just now. Please try again.")
