from __future__ import annotations

# stdlib
from typing import Any, Dict, List, Optional, Sequence
import json, logging

# third-party
import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError

# local
from physilink.core.config import settings
from physilink.models.schemas import AnalysisResult, KnowledgeFile, TheoryVerification


logger = logging.getLogger("physilink.client")


class AnalysisError(RuntimeError):
    """Provider call failed or returned something we cannot use."""


# ==============================================================================
# Prompts
# ==============================================================================

FORMATTING_RULES = (
    "MANDATORY FORMATTING RULES:\n"
    "1. Use LaTeX for ALL mathematical notation.\n"
    "2. Inside any prose/text description, wrap EVERY mathematical variable (like x, t, v), "
    "symbol, or equation in single dollar signs ($).\n"
    "3. In the 'equations' arrays, provide PURE LaTeX strings without the outer dollar signs.\n"
    "4. Ensure all LaTeX is high-precision.\n"
    "5. Do not explain the formatting rules in your output."
)

ANALYSIS_SHAPE = {
    "summary": "Detailed summary with $...$ around all math",
    "concepts": [{
        "name": "str", "field": "str",
        "description": "Brief description with $...$ around math",
        "equations": ["pure LaTeX, e.g. \\frac{1}{2}mv^{2}"],
        "importance": "number 1-10",
    }],
    "realLifeObservations": [{"conceptName": "str", "description": "str", "example": "str"}],
    "resources": [{"title": "str", "type": "Book|Website|Video|Simulation", "description": "str", "link": "str?"}],
    "tips": [{"concept": "str", "trick": "str"}],
    "complexityLevel": "number 1-10",
    "sourceEvidence": [{"text": "str", "source": "str"}],
}

VERIFICATION_SHAPE = {
    "overallCorrectness": "number 0-100",
    "verdict": "Scientifically Sound|Minor Errors|Significant Flaws|Incorrect",
    "inaccuracies": [{
        "point": "str",
        "reason": "str with $...$ around math",
        "correction": "pure LaTeX or text with $ math $",
    }],
    "feedback": "Overall feedback with $...$ around math",
    "improvedTheory": "str?",
    "sourceEvidence": [{"text": "str", "source": "str"}],
}

STRICT_RULE = (
    "STRICT MODE: rely only on the attached reference material. If it does not cover "
    "something, say so instead of filling the gap, and quote the passages you used in "
    "sourceEvidence."
)

ANALYSIS_SYSTEM = (
    "You are PhysiLink, an advanced scientific deconstruction engine.\n" + FORMATTING_RULES
)
VERIFICATION_SYSTEM = (
    "Audit the scientific reasoning. MANDATORY: Wrap all variables and symbols in $ signs. "
    "Use pure LaTeX for corrections. Be rigorous."
)

ILLUSTRATION_TEMPLATE = (
    "Professional scientific diagram or clean physics experiment photograph illustrating: {prompt} "
    "Clean, high contrast, textbook quality. No text labels inside the image."
)


def _system_prompt(base: str, shape: Dict[str, Any], strict_mode: bool) -> str:
    parts = [base]
    if strict_mode:
        parts.append(STRICT_RULE)
    parts.append(
        "Return STRICT JSON only, shaped like: " + json.dumps(shape, ensure_ascii=False)
    )
    return "\n\n".join(parts)


def knowledge_parts(files: Sequence[KnowledgeFile]) -> List[Dict[str, Any]]:
    """Reference material as chat content parts (images inline, documents as files)."""
    out: List[Dict[str, Any]] = []
    for f in files:
        url = f"data:{f.mime_type};base64,{f.data}"
        if f.mime_type.startswith("image/"):
            out.append({"type": "image_url", "image_url": {"url": url}})
        else:
            out.append({"type": "file", "file": {"filename": f.name, "file_data": url}})
    return out


def parse_json_object(raw: str) -> Dict[str, Any]:
    """json.loads with a best-effort recovery of the outermost {...}."""
    raw = (raw or "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        start, end = raw.find("{"), raw.rfind("}")
        if start == -1 or end <= start:
            raise AnalysisError("Model returned invalid JSON.")
        try:
            data = json.loads(raw[start:end + 1])
        except json.JSONDecodeError:
            raise AnalysisError("Model returned invalid JSON.")
    if not isinstance(data, dict):
        raise AnalysisError("Model returned JSON that is not an object.")
    return _drop_nulls(data)


def _drop_nulls(value: Any) -> Any:
    """null means "absent" at any depth; the schema defaults fill the gaps."""
    if isinstance(value, dict):
        return {k: _drop_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_drop_nulls(v) for v in value if v is not None]
    return value


def describe_error(e: Exception) -> str:
    msg = str(e)
    if "unsupported_value" in msg or "does not support" in msg:
        return "This model doesn't support that parameter; request was rejected."
    if any(k in msg.lower() for k in ["rate", "quota", "limit"]):
        return "The model provider is rate limiting right now. Please try again in a moment."
    return "Couldn't reach the model just now. Please try again."


# ==============================================================================
# Client
# ==============================================================================

class AnalysisClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        illustration_model: Optional[str] = None,
        illustration_size: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self.base_url = base_url or settings.OPENAI_BASE_URL
        self.model = model or settings.ANALYSIS_MODEL
        self.illustration_model = illustration_model or settings.ILLUSTRATION_MODEL
        self.illustration_size = illustration_size or settings.ILLUSTRATION_SIZE
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self._client: Optional[AsyncOpenAI] = None

    def ready(self) -> bool:
        return bool(self.api_key)

    def _oai(self) -> AsyncOpenAI:
        if not self.ready():
            raise AnalysisError("OpenAI not configured")
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                http_client=httpx.AsyncClient(timeout=self.timeout),
                max_retries=0,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def _complete_json(self, system: str, content: List[Dict[str, Any]]) -> Dict[str, Any]:
        client = self._oai()
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": content},
                ],
                response_format={"type": "json_object"},
            )
        except (OpenAIError, httpx.HTTPError) as e:
            logger.warning("completion failed (%s)", e)
            raise AnalysisError(describe_error(e)) from e
        if not resp.choices:
            raise AnalysisError("Model returned no answer.")
        return parse_json_object(resp.choices[0].message.content or "")

    async def analyze(
        self,
        query: str,
        image: Optional[KnowledgeFile] = None,
        knowledge_files: Sequence[KnowledgeFile] = (),
        strict_mode: bool = False,
    ) -> AnalysisResult:
        content = knowledge_parts(knowledge_files)
        if image is not None:
            content.extend(knowledge_parts([image]))
        content.append({"type": "text", "text": f"Query/Problem: {query}"})

        data = await self._complete_json(
            _system_prompt(ANALYSIS_SYSTEM, ANALYSIS_SHAPE, strict_mode), content
        )
        data.pop("result_id", None)
        try:
            result = AnalysisResult.model_validate(data)
        except ValidationError as e:
            raise AnalysisError("Model returned an unexpected analysis shape.") from e
        logger.info(
            "analysis %s: %d concepts, %d observations",
            result.result_id, len(result.concepts), len(result.observations),
        )
        return result

    async def verify(
        self,
        context: str,
        user_work: str,
        knowledge_files: Sequence[KnowledgeFile] = (),
        strict_mode: bool = False,
    ) -> TheoryVerification:
        content = knowledge_parts(knowledge_files)
        content.append({"type": "text", "text": f"Context: {context}\nUser's Theory: {user_work}"})

        data = await self._complete_json(
            _system_prompt(VERIFICATION_SYSTEM, VERIFICATION_SHAPE, strict_mode), content
        )
        try:
            return TheoryVerification.model_validate(data)
        except ValidationError as e:
            raise AnalysisError("Model returned an unexpected verification shape.") from e

    async def generate_illustration(self, prompt: str) -> Optional[str]:
        """PNG data URI for ``prompt``, or None when the provider sends no image."""
        client = self._oai()
        try:
            resp = await client.images.generate(
                model=self.illustration_model,
                prompt=ILLUSTRATION_TEMPLATE.format(prompt=prompt),
                size=self.illustration_size,
                n=1,
            )
        except (OpenAIError, httpx.HTTPError) as e:
            raise AnalysisError(describe_error(e)) from e
        for item in resp.data or []:
            if item.b64_json:
                return f"data:image/png;base64,{item.b64_json}"
            if item.url:
                return item.url
        return None
