"""Capability matching between agents and tasks.

An agent declares skills, languages and a concurrency limit; a task may
declare required and preferred skills and languages. Matching is
case-insensitive and ignores surrounding whitespace.

Scoring:
    - Missing any required skill or language makes the agent ineligible
      with a score of 0.
    - An eligible agent scores 50, plus up to 25 for the fraction of
      preferred skills it has, plus up to 25 for the fraction of preferred
      languages it has. An empty preference list counts as fully matched,
      so an agent facing a task with no requirements scores 100.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import pydantic
from pydantic import BaseModel, Field

from switchyard.database.models.agent import Agent
from switchyard.database.models.task import Task
from switchyard.errors import ValidationError
from switchyard.orchestrator.types import (
    CAPABILITY_REQUIREMENTS_KEY,
    AgentCapabilities,
    CapabilityRequirements,
)

BASE_SCORE = 50
PREFERRED_SKILLS_WEIGHT = 25
PREFERRED_LANGUAGES_WEIGHT = 25


class CapabilityMatchResult(BaseModel):
    """Result of matching one agent against one set of requirements."""

    is_eligible: bool
    score: int = Field(ge=0, le=100)
    matched_required_skills: list[str] = Field(default_factory=list)
    missing_required_skills: list[str] = Field(default_factory=list)
    matched_required_languages: list[str] = Field(default_factory=list)
    missing_required_languages: list[str] = Field(default_factory=list)
    matched_preferred_skills: list[str] = Field(default_factory=list)
    matched_preferred_languages: list[str] = Field(default_factory=list)


@dataclass
class AgentMatch:
    """An agent paired with its match result."""

    agent: Agent
    match: CapabilityMatchResult


def normalize(value: str) -> str:
    return value.strip().lower()


def _normalized_set(values: Iterable[str]) -> set[str]:
    return {normalize(v) for v in values if v and v.strip()}


def get_agent_capabilities(agent: Agent) -> AgentCapabilities:
    """Return an agent's declared capabilities, or the defaults.

    Defaults are no skills, no languages and one concurrent task.
    """
    raw = (agent.agent_metadata or {}).get("capabilities")
    if not raw:
        return AgentCapabilities()
    return AgentCapabilities.model_validate(raw)


def get_task_capability_requirements(task: Task) -> CapabilityRequirements:
    """Return the requirements stored in a task's metadata (may be empty)."""
    raw = (task.metadata_ or {}).get(CAPABILITY_REQUIREMENTS_KEY)
    if not raw:
        return CapabilityRequirements()
    return CapabilityRequirements.model_validate(raw)


def validate_agent_capabilities(data: Any) -> AgentCapabilities:
    """Validate a raw capabilities block.

    Raises:
        ValidationError: If the block is malformed.
    """
    try:
        return AgentCapabilities.model_validate(data or {})
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid agent capabilities",
            details={"errors": e.errors(include_url=False)},
        ) from e


def agent_has_skill(agent: Agent, skill: str) -> bool:
    return normalize(skill) in _normalized_set(get_agent_capabilities(agent).skills)


def agent_has_language(agent: Agent, language: str) -> bool:
    return normalize(language) in _normalized_set(get_agent_capabilities(agent).languages)


def agent_has_all_skills(agent: Agent, skills: Iterable[str]) -> bool:
    return _normalized_set(skills) <= _normalized_set(get_agent_capabilities(agent).skills)


def agent_has_all_languages(agent: Agent, languages: Iterable[str]) -> bool:
    return _normalized_set(languages) <= _normalized_set(
        get_agent_capabilities(agent).languages
    )


def _partition(wanted: Sequence[str], have: set[str]) -> tuple[list[str], list[str]]:
    matched, missing = [], []
    for item in wanted:
        if not item.strip():
            continue
        (matched if normalize(item) in have else missing).append(item)
    return matched, missing


def _preference_fraction(matched: Sequence[str], preferred: Sequence[str]) -> float:
    total = len([p for p in preferred if p.strip()])
    if total == 0:
        return 1.0
    return len(matched) / total


def match_capabilities(
    capabilities: AgentCapabilities,
    requirements: CapabilityRequirements,
) -> CapabilityMatchResult:
    """Score declared capabilities against requirements.

    Args:
        capabilities: The agent's capabilities.
        requirements: The task's requirements.

    Returns:
        CapabilityMatchResult with eligibility, score and matched/missing lists.
    """
    skills = _normalized_set(capabilities.skills)
    languages = _normalized_set(capabilities.languages)

    matched_req_skills, missing_req_skills = _partition(requirements.required_skills, skills)
    matched_req_langs, missing_req_langs = _partition(
        requirements.required_languages, languages
    )
    matched_pref_skills, _ = _partition(requirements.preferred_skills, skills)
    matched_pref_langs, _ = _partition(requirements.preferred_languages, languages)

    is_eligible = not missing_req_skills and not missing_req_langs
    if is_eligible:
        score = round(
            BASE_SCORE
            + PREFERRED_SKILLS_WEIGHT
            * _preference_fraction(matched_pref_skills, requirements.preferred_skills)
            + PREFERRED_LANGUAGES_WEIGHT
            * _preference_fraction(matched_pref_langs, requirements.preferred_languages)
        )
    else:
        score = 0

    return CapabilityMatchResult(
        is_eligible=is_eligible,
        score=score,
        matched_required_skills=matched_req_skills,
        missing_required_skills=missing_req_skills,
        matched_required_languages=matched_req_langs,
        missing_required_languages=missing_req_langs,
        matched_preferred_skills=matched_pref_skills,
        matched_preferred_languages=matched_pref_langs,
    )


def match_agent_to_task(agent: Agent, task: Task) -> CapabilityMatchResult:
    """Match an agent against a task's stored requirements."""
    return match_capabilities(
        get_agent_capabilities(agent), get_task_capability_requirements(task)
    )


def find_agents_for_requirements(
    agents: Iterable[Agent],
    requirements: CapabilityRequirements,
    eligible_only: bool = True,
    min_score: int = 0,
    limit: int | None = None,
) -> list[AgentMatch]:
    """Rank agents against requirements, best first.

    Args:
        agents: Candidate agents.
        requirements: Requirements to match.
        eligible_only: Drop agents missing a hard requirement.
        min_score: Drop agents scoring below this value.
        limit: Return at most this many entries.

    Returns:
        AgentMatch entries sorted by score descending. Equal scores keep
        the input order.
    """
    ranked: list[AgentMatch] = []
    for agent in agents:
        match = match_capabilities(get_agent_capabilities(agent), requirements)
        if eligible_only and not match.is_eligible:
            continue
        if match.score < min_score:
            continue
        ranked.append(AgentMatch(agent=agent, match=match))

    ranked.sort(key=lambda m: m.match.score, reverse=True)
    if limit is not None:
        ranked = ranked[:limit]
    return ranked


def find_agents_for_task(
    agents: Iterable[Agent],
    task: Task,
    eligible_only: bool = True,
    min_score: int = 0,
    limit: int | None = None,
) -> list[AgentMatch]:
    """Rank agents against a task's stored requirements, best first."""
    return find_agents_for_requirements(
        agents,
        get_task_capability_requirements(task),
        eligible_only=eligible_only,
        min_score=min_score,
        limit=limit,
    )


def get_best_agent_for_task(agents: Iterable[Agent], task: Task) -> AgentMatch | None:
    """Return the top-ranked eligible agent for a task, or None."""
    ranked = find_agents_for_task(agents, task, limit=1)
    return ranked[0] if ranked else None
