"""Content hashes used to snapshot an agent definition on an attempt."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel

from training_camp.agents.definition import AgentDefinition


def canonical_json(value: Any) -> str:
    """Serialize ``value`` deterministically: sorted keys, no whitespace."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    elif isinstance(value, list):
        value = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_system_prompt(agent: AgentDefinition) -> str:
    return sha256_hex(agent.system_prompt)


def hash_tools(agent: AgentDefinition) -> str:
    return sha256_hex(canonical_json(agent.tools))


def hash_flow(agent: AgentDefinition) -> str:
    return sha256_hex(canonical_json(agent.flow))
