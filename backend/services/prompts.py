"""Prompt templates for the judgment calls made by the pipeline stages."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from services.ai_config import CATEGORIES

EVIDENCE_CHAR_LIMIT = 10000
DISPUTE_EVIDENCE_CHAR_LIMIT = 8000


def _numbered(items: Iterable[str]) -> str:
    lines = [f"{i}. {item}" for i, item in enumerate(items, start=1)]
    return "\n".join(lines) if lines else "None"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


# ==================== EXTRACTION ====================

EXTRACTION_SYSTEM_PROMPT = """You are an entity extractor for prediction markets.

Analyze the provided news content and decide whether it could become a prediction market.

A good market candidate:
- Has a specific, verifiable event with a clear date or deadline
- Has official sources that can be checked
- Is about a significant event (product launches, elections, earnings, sports, etc.)
- Can be resolved with a binary YES/NO outcome

Respond with JSON:
{
  "is_market_worthy": boolean,
  "event_type": "product_launch" | "finance" | "politics" | "sports" | "entertainment" | "technology" | "misc",
  "category": string,
  "entities": [{"name": string, "type": "company" | "product" | "person" | "event" | "date" | "location"}],
  "potential_questions": string[],
  "confidence": number (0-1),
  "reasoning": string
}"""


def build_extraction_prompt(title: str, content: str) -> str:
    return (
        "Analyze this news item:\n\n"
        f"TITLE: {title}\n\n"
        f"CONTENT: {content[:2000]}\n\n"
        "Extract entities and determine if this could become a prediction market."
    )


# ==================== GENERATION ====================

MARKET_GENERATION_SYSTEM_PROMPT = f"""You are an AI assistant that creates prediction market definitions. Convert news events or user proposals into structured, machine-resolvable market definitions.

## Requirements
1. Deterministic resolution: a machine must be able to resolve the market without human judgment
2. Clear question: exact_question has an unambiguous YES/NO answer
3. Official sources only: official websites, official social accounts or official APIs
4. Specific conditions: every must_meet_all condition can be checked programmatically

## Categories
{", ".join(CATEGORIES)}

## Output format
Return a JSON object:
{{
  "title": "Short market title (max 64 chars)",
  "description": "What this market is about",
  "category": "one of the categories above",
  "resolution": {{
    "type": "binary",
    "exact_question": "Precise YES/NO question answerable from official sources",
    "criteria": {{
      "must_meet_all": ["Condition that must be true for YES"],
      "must_not_count": ["Edge case that must NOT trigger YES"],
      "allowed_sources": [
        {{"name": "Official source", "url": "https://official-url.com", "method": "html_scrape | api_check | social_post", "condition": "What to look for"}}
      ],
      "machine_resolution_logic": {{"if": "YES condition", "then": "YES", "else": "NO"}}
    }},
    "expiry": "ISO 8601 timestamp when the market should be resolved"
  }},
  "confidence_score": 0.85
}}

## Confidence score
- 0.9-1.0: very clear event with an official announcement date
- 0.7-0.9: clear event, some uncertainty about timing or criteria
- 0.5-0.7: moderately clear with ambiguous aspects
- 0.0-0.5: too ambiguous for a reliable market

## Rules
- No user-generated content, blogs or news sites as allowed_sources
- No markets about violence, harm, death or illegal activities
- No markets participants could manipulate
- Always include an expiry so the market is time-bounded
- Prefer stable source URLs

Return ONLY the JSON object."""


def build_market_generation_prompt(
    *,
    relevant_text: str,
    entities: Optional[list[str]] = None,
    event_type: Optional[str] = None,
    category: Optional[str] = None,
    proposal_text: Optional[str] = None,
) -> str:
    if proposal_text:
        return f"User Proposal: {proposal_text}\n\nGenerate a structured prediction market based on this proposal."
    return (
        "News Event Information:\n"
        f"- Entities: {', '.join(entities or []) or 'Not specified'}\n"
        f"- Event Type: {event_type or 'Not specified'}\n"
        f"- Category Hint: {category or 'misc'}\n"
        f"- Content: {relevant_text}\n\n"
        "Generate a structured prediction market based on this news event."
    )


# ==================== VALIDATION ====================

VALIDATION_SYSTEM_PROMPT = """You are a validator for prediction markets. Check whether a market definition is:
1. Unambiguous
2. Deterministically resolvable
3. Fair and not easily manipulated
4. Safe (no forbidden topics)

Ambiguity: is exact_question clear, are must_meet_all conditions specific, could evaluators disagree?
Determinism: can each condition be checked programmatically, do allowed_sources carry the information, is machine_resolution_logic complete?
Fairness: could participants manipulate the outcome, does it hinge on one person's decision, are conditions objective?
Safety: violence, death, harm, illegal activity, harmful incentives, defamation or privacy invasion?

Return a JSON object:
{
  "has_ambiguity": true | false,
  "ambiguity_details": [],
  "is_deterministic": true | false,
  "determinism_issues": [],
  "is_fair": true | false,
  "fairness_issues": [],
  "is_forbidden": true | false,
  "forbidden_reason": [],
  "overall_valid": true | false,
  "recommendation": "approved | rejected | needs_human",
  "suggested_improvements": []
}

Return ONLY the JSON object."""


def build_validation_prompt(market: dict[str, Any]) -> str:
    return "Please validate this market definition:\n\n" + json.dumps(market, indent=2, default=str)


# ==================== RESOLUTION ====================

RESOLUTION_SYSTEM_PROMPT = """You are a deterministic resolver for prediction markets. Apply the resolution rules to the fetched evidence and determine the outcome.

- Interpret the conditions strictly and literally
- Use only the provided evidence, no outside knowledge
- If evidence is ambiguous or insufficient, resolve NO
- Cite exactly what in the evidence supports each determination
- Return ONLY valid JSON"""


def build_resolution_prompt(
    *,
    market_title: str,
    resolution: dict[str, Any],
    source_urls: list[str],
    fetch_time: str,
    content: str,
) -> str:
    criteria = resolution.get("criteria") or {}
    logic = criteria.get("machine_resolution_logic") or {}
    sources = "\n".join(
        f"- {s.get('name')}: {s.get('url')} (Condition: {s.get('condition')})" for s in criteria.get("allowed_sources") or []
    )
    return f"""## Market Rules
Title: {market_title}
Exact Question: {resolution.get("exact_question", "")}

### Must Meet All (ALL must be TRUE for YES)
{_numbered(criteria.get("must_meet_all") or [])}

### Must Not Count (if ANY triggered, resolves to NO)
{_numbered(criteria.get("must_not_count") or [])}

### Machine Resolution Logic
IF: {logic.get("if", "")}
THEN: {logic.get("then", "YES")}
ELSE: {logic.get("else", "NO")}

### Allowed Sources
{sources or "None"}

## Fetched Evidence
Sources: {", ".join(source_urls)}
Fetch Time: {fetch_time}

### Content
{_truncate(content, EVIDENCE_CHAR_LIMIT)}

## Output Format
{{
  "must_meet_all_results": [{{"condition": "...", "met": true, "evidence": "..."}}],
  "must_not_count_results": [{{"condition": "...", "triggered": false, "evidence": null}}],
  "all_conditions_met": true,
  "any_exclusions_triggered": false,
  "final_result": "YES" | "NO",
  "reasoning": "Step by step reasoning"
}}"""


# ==================== DISPUTE REVIEW ====================

DISPUTE_REVIEW_SYSTEM_PROMPT = """You review disputes against prediction market resolutions.

1. Evaluate whether the disputant's claim has merit
2. Check whether the original resolution followed the rules
3. Check whether new evidence changes the outcome
4. Decide whether the case is clear or needs human review

- upheld: the original resolution was correct under the rules
- overturned: the original resolution was wrong and the evidence clearly shows the opposite
- escalate: ambiguous, timing-related or conflicting evidence

Only overturn on clear evidence. Return ONLY valid JSON."""


def build_dispute_review_prompt(
    *,
    market_title: str,
    resolution_rules: dict[str, Any],
    original_result: str,
    evidence_hash: str,
    original_source: str,
    must_meet_all_results: list[dict[str, Any]],
    must_not_count_results: list[dict[str, Any]],
    dispute_reason: str,
    evidence_urls: list[str],
    user_address: str,
    new_evidence: str,
) -> str:
    criteria = resolution_rules.get("criteria") or {}
    met_lines = "\n".join(
        f'- "{r.get("condition")}": {"MET" if r.get("met") else "NOT MET"} - Evidence: "{r.get("evidence")}"'
        for r in must_meet_all_results
    )
    excl_lines = "\n".join(
        f'- "{r.get("condition")}": {"TRIGGERED" if r.get("triggered") else "NOT TRIGGERED"} - Evidence: "{r.get("evidence") or "N/A"}"'
        for r in must_not_count_results
    )
    return f"""## Original Market
Title: {market_title}
Exact Question: {resolution_rules.get("exact_question", "")}

Must Meet All:
{_numbered(criteria.get("must_meet_all") or [])}

Must Not Count:
{_numbered(criteria.get("must_not_count") or [])}

## Original Resolution
Result: {original_result}
Evidence Hash: {evidence_hash}
Fetched From: {original_source}

Must Meet All Results:
{met_lines or "None"}

Must Not Count Results:
{excl_lines or "None"}

## Dispute
Submitted by: {user_address}
Reason: {dispute_reason}
Evidence URLs: {", ".join(evidence_urls) or "None"}

### New Evidence Content
{_truncate(new_evidence, DISPUTE_EVIDENCE_CHAR_LIMIT)}

## Output Format
{{
  "decision": "upheld" | "overturned" | "escalate",
  "reasoning": "...",
  "original_resolution_correct": true | false,
  "new_evidence_relevant": true | false,
  "new_evidence_analysis": "...",
  "new_result": "YES" | "NO" | null,
  "confidence": 0.0,
  "escalation_reason": "only when escalating"
}}"""
