from typing import Any, Dict, List

from physilink.models.schemas import Concept, DisplayState, Observation, TheoryVerification
from physilink.services.math_renderer import render, render_html


PLACEHOLDER_FIELDS = ["Mechanics", "Thermodynamics", "Quantum", "Electromagnetism"]
CARD_EQUATIONS = 3


def concept_distribution(concepts: List[Concept]) -> List[Dict[str, Any]]:
    """Radar chart data: importance summed per field, padded when sparse."""
    totals: Dict[str, float] = {}
    for c in concepts:
        totals[c.field] = totals.get(c.field, 0.0) + c.importance
    data = [{"subject": name, "value": value, "full_mark": 10} for name, value in totals.items()]
    if len(data) < 3:
        for p in PLACEHOLDER_FIELDS:
            if p not in totals:
                data.append({"subject": p, "value": 0.0, "full_mark": 10})
    return data


def share_text(concept: Concept) -> str:
    return (
        f"Physics Concept: {concept.name}\n"
        f"Field: {concept.field}\n"
        f"Description: {concept.description}\n"
        f"Equations: {', '.join(concept.equations)}"
    )


def _inline(text: str) -> str:
    return render_html(render(text))


def _display(text: str) -> str:
    return render_html(render(text, display_mode=True))


def _concept_card(c: Concept) -> Dict[str, Any]:
    return {
        "name": c.name,
        "field": c.field,
        "importance": c.importance,
        "description_html": _inline(c.description),
        "equations_html": [_display(eq) for eq in c.equations[:CARD_EQUATIONS]],
        "illustration": c.illustration,
        "share_text": share_text(c),
    }


def _observation_card(o: Observation) -> Dict[str, Any]:
    return {
        "concept_name": o.concept_name,
        "description_html": _inline(o.description),
        "example_html": _inline(o.example),
        "illustration": o.illustration,
    }


def _verification_view(v: TheoryVerification) -> Dict[str, Any]:
    return {
        "verdict": v.verdict,
        "overall_correctness": v.overall_correctness,
        "feedback_html": _inline(v.feedback),
        "improved_theory_html": _inline(v.improved_theory),
        "inaccuracies": [
            {
                "point": i.point,
                "reason_html": _inline(i.reason),
                "correction_html": _inline(i.correction),
            }
            for i in v.inaccuracies
        ],
        "source_evidence": [q.model_dump() for q in v.source_evidence],
    }


def build_view(state: DisplayState) -> Dict[str, Any]:
    view: Dict[str, Any] = {
        "version": state.version,
        "loading": state.loading,
        "error": state.error,
        "strict_mode": state.strict_mode,
        "knowledge_files": [f.model_dump() for f in state.knowledge_files],
        "result": None,
        "verification": None,
    }
    r = state.result
    if r is not None:
        view["result"] = {
            "result_id": r.result_id,
            "summary_html": _inline(r.summary),
            "complexity_level": r.complexity_level,
            "chart": concept_distribution(r.concepts),
            "concepts": [_concept_card(c) for c in r.concepts],
            "observations": [_observation_card(o) for o in r.observations],
            "resources": [res.model_dump() for res in r.resources],
            "tips": [t.model_dump() for t in r.tips],
            "source_evidence": [q.model_dump() for q in r.source_evidence],
        }
    if state.verification is not None:
        view["verification"] = _verification_view(state.verification)
    return view
