from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Literal, Union, Annotated
from uuid import uuid4


# ==============================================================================
# Rendering
# ==============================================================================

class TextSegment(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class MathSegment(BaseModel):
    kind: Literal["math"] = "math"
    source: str
    rendered_ok: bool
    display: bool = False
    image: Optional[str] = None  # PNG data URI when rendered_ok

    @property
    def fallback_text(self) -> str:
        """What the reader sees when the formula could not be typeset."""
        return f"${self.source}$"


Segment = Annotated[Union[TextSegment, MathSegment], Field(discriminator="kind")]


class RenderIn(BaseModel):
    text: str = ""
    display_mode: bool = False


class RenderOut(BaseModel):
    segments: List[Segment] = []
    html: str = ""


# ==============================================================================
# Analysis
# ==============================================================================

class Concept(BaseModel):
    name: str = ""
    field: str = ""
    description: str = ""
    equations: List[str] = []
    importance: float = 5.0
    illustration: Optional[str] = None

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 5.0
        return max(1.0, min(10.0, v))


class Observation(BaseModel):
    concept_name: str = Field("", validation_alias=AliasChoices("concept_name", "conceptName"))
    description: str = ""
    example: str = ""
    illustration: Optional[str] = None


ResourceType = Literal["Book", "Website", "Video", "Simulation"]


class Resource(BaseModel):
    title: str = ""
    type: ResourceType = "Website"
    description: str = ""
    link: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, v):
        return v if v in ("Book", "Website", "Video", "Simulation") else "Website"


class MemorizationTip(BaseModel):
    concept: str = ""
    trick: str = ""


class SupportingQuote(BaseModel):
    text: str = ""
    source: str = ""


class AnalysisResult(BaseModel):
    result_id: str = Field(default_factory=lambda: uuid4().hex)
    summary: str = ""
    concepts: List[Concept] = []
    observations: List[Observation] = Field([], validation_alias=AliasChoices("observations", "realLifeObservations"))
    resources: List[Resource] = []
    tips: List[MemorizationTip] = []
    complexity_level: float = Field(5.0, validation_alias=AliasChoices("complexity_level", "complexityLevel"))
    source_evidence: List[SupportingQuote] = Field([], validation_alias=AliasChoices("source_evidence", "sourceEvidence"))

    @field_validator("complexity_level", mode="before")
    @classmethod
    def _clamp_complexity(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 5.0
        # the provider sends 0 for "unknown"
        return max(1.0, min(10.0, v)) if v else 5.0


# ==============================================================================
# Verification
# ==============================================================================

Verdict = Literal["Scientifically Sound", "Minor Errors", "Significant Flaws", "Incorrect"]


class Inaccuracy(BaseModel):
    point: str = ""
    reason: str = ""
    correction: str = ""


class TheoryVerification(BaseModel):
    overall_correctness: float = Field(0.0, validation_alias=AliasChoices("overall_correctness", "overallCorrectness"))
    verdict: Verdict = "Incorrect"
    inaccuracies: List[Inaccuracy] = []
    feedback: str = ""
    improved_theory: str = Field("", validation_alias=AliasChoices("improved_theory", "improvedTheory"))
    source_evidence: List[SupportingQuote] = Field([], validation_alias=AliasChoices("source_evidence", "sourceEvidence"))

    @field_validator("overall_correctness", mode="before")
    @classmethod
    def _clamp_correctness(cls, v):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(100.0, v))

    @field_validator("verdict", mode="before")
    @classmethod
    def _known_verdict(cls, v):
        known = ("Scientifically Sound", "Minor Errors", "Significant Flaws", "Incorrect")
        return v if v in known else "Incorrect"

    @field_validator("improved_theory", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or ""


# ==============================================================================
# Knowledge library
# ==============================================================================

class KnowledgeFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    data: str = Field(exclude=True, repr=False)  # base64, never echoed back
    mime_type: str


# ==============================================================================
# Session state / requests
# ==============================================================================

class DisplayState(BaseModel):
    loading: bool = False
    error: Optional[str] = None
    result: Optional[AnalysisResult] = None
    verification: Optional[TheoryVerification] = None
    knowledge_files: List[KnowledgeFile] = []
    strict_mode: bool = False
    version: int = 0


class CreateSessionResponse(BaseModel):
    session_id: str
    state: DisplayState


class AnalyzeIn(BaseModel):
    query: str = ""
    image: Optional[str] = None  # data URL from a canvas capture, or bare base64


class VerifyIn(BaseModel):
    user_work: str = ""
    context: Optional[str] = None


class StrictModeIn(BaseModel):
    enabled: bool
