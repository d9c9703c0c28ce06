"""Agent configs and prompt templates for ragnote.

An agent seeds a new chat: which files or search filters ground the first
query, which tools the model may call, and the prompt template the first
messages are built from. Custom agents are YAML files in
``.ragnote/agents/``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any

import yaml

from ragnote.core.chat import Message, RetrievalResult
from ragnote.tools.registry import ToolDefinition, get_tool_definition, get_tool_definitions
from ragnote.utils.paths import get_agents_dir
from ragnote.vault.retrieval import RetrievalFilters, SearchMode

logger = logging.getLogger(__name__)

RAG_PROMPT = (
    "Based on the following context answer the question down below. \n\n\n"
    "Context: \n{CONTEXT}\n\n\nQuery:\n{QUERY}"
)

FILE_REFERENCE_PATTERN = re.compile(r"@([^@\s][^@]*?\.md)\b")


@dataclass
class PromptMessage:
    role: str  # "system" or "user"
    content: str


@dataclass
class DBSearchFilters:
    """Search settings for an agent's first query.

    ``search_mode`` of None defers to the ``search_mode`` setting.
    """

    limit: int = 15
    min_date: datetime | None = None
    max_date: datetime | None = None
    pass_full_note_into_context: bool = False
    search_mode: str | None = None


@dataclass
class AgentConfig:
    name: str
    files: list[str] = field(default_factory=list)
    db_search_filters: DBSearchFilters | None = field(default_factory=DBSearchFilters)
    tool_definitions: list[ToolDefinition] = field(default_factory=get_tool_definitions)
    prompt_template: list[PromptMessage] = field(
        default_factory=lambda: [PromptMessage("user", RAG_PROMPT)]
    )

    def retrieval_filters(
        self, default_search_mode: str = "vector", extra_files: list[str] | None = None
    ) -> RetrievalFilters:
        """Filters for the first query. Agents without search filters fetch nothing."""
        files = list(self.files) + [f for f in extra_files or [] if f not in self.files]
        search = self.db_search_filters
        if search is None:
            return RetrievalFilters(files=files, limit=0)
        return RetrievalFilters(
            files=files,
            limit=search.limit,
            min_date=search.min_date,
            max_date=search.max_date,
            search_mode=SearchMode(search.search_mode or default_search_mode),
            pass_full_note_into_context=search.pass_full_note_into_context,
        )


_ASSISTANT_INTRO = (
    "You are a helpful assistant helping a user organize and manage their personal "
    "knowledge and notes. You will answer the user's question and help them with "
    "their request. You can search the knowledge base by using the search tool and "
    "create new notes by using the create note tool."
)

DEFAULT_AGENT = AgentConfig(
    name="Default",
    prompt_template=[
        PromptMessage(
            "system",
            _ASSISTANT_INTRO + "\n\nAn initial query has been made and the context is "
            "already provided for you (so please do not call the search tool initially).",
        ),
        PromptMessage(
            "user",
            "Context retrieved from your knowledge base for the query below: \n"
            "{CONTEXT}\n\n\nQuery for context above:\n{QUERY}",
        ),
    ],
)

RESEARCH_AGENT = AgentConfig(
    name="Research Agent",
    db_search_filters=None,
    prompt_template=[
        PromptMessage("system", _ASSISTANT_INTRO),
        PromptMessage("user", "{QUERY}"),
    ],
)

DAILY_NOTE_AGENT = AgentConfig(
    name="Daily Note Agent",
    prompt_template=[
        PromptMessage(
            "system",
            "You are a helpful assistant helping a user organize and manage their "
            "personal knowledge and notes. The user will write quick notes about their "
            "day to which you will respond with relevant information from things they "
            "have written before in that day and (if relevant) information from their "
            "knowledge base. Today is {TODAY}.\n\n"
            "- Try not to provide advice, nor be verbose.\n"
            "- The focus is entirely on the user and their thoughts, not you or your opinions.\n"
            "- You can use the search tool to find information from the user's knowledge base.\n"
            "- You can use the create note tool to create a new note for the user.\n"
            "When the user asks, you will create a note for them with all the relevant "
            "things they have noted in the day.",
        ),
        PromptMessage("user", "{QUERY}"),
    ],
)

EXAMPLE_AGENTS = [DEFAULT_AGENT, RESEARCH_AGENT, DAILY_NOTE_AGENT]


PLACEHOLDER_PATTERN = re.compile(r"\{(CONTEXT|QUERY|TODAY)\}")


def _fill(template: str, query: str, context: str, today: str) -> str:
    # Substituted values are never rescanned
    values = {"CONTEXT": context, "QUERY": query, "TODAY": today}
    return PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], template)


def apply_prompt_template(
    template: list[PromptMessage],
    query: str,
    results: list[RetrievalResult],
    today: date | None = None,
) -> list[Message]:
    """Build the first messages of a chat from a prompt template.

    User messages keep ``query`` as their visible content and carry the
    retrieval results for provenance. When results exist but the user
    template has no ``{CONTEXT}`` slot, the RAG prompt is used for that
    message so the context still reaches the model.
    """
    context = format_context(results)
    today_str = (today or date.today()).isoformat()
    messages: list[Message] = []
    for entry in template:
        if entry.role == "user":
            text = entry.content
            if results and "{CONTEXT}" not in text:
                text = RAG_PROMPT
            messages.append(Message(
                role="user",
                content=_fill(text, query, context, today_str),
                visible_content=query,
                context=list(results),
            ))
        else:
            messages.append(Message(
                role=entry.role,
                content=_fill(entry.content, query, context, today_str),
            ))
    if not any(m.role == "user" for m in messages):
        messages.append(Message(
            role="user",
            content=_fill(RAG_PROMPT, query, context, today_str),
            visible_content=query,
            context=list(results),
        ))
    return messages


def format_context(results: list[RetrievalResult]) -> str:
    """Concatenate result contents in order, separated by a blank line."""
    return "\n\n".join(r.content for r in results)


def extract_file_references(text: str) -> list[str]:
    """Find ``@note.md`` references in user input, in order, without repeats."""
    found: list[str] = []
    for match in FILE_REFERENCE_PATTERN.finditer(text):
        path = match.group(1).strip()
        if path and path not in found:
            found.append(path)
    return found


def _parse_date(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


def agent_from_dict(d: dict[str, Any]) -> AgentConfig:
    """Build an AgentConfig from parsed YAML."""
    if "limit" in d and d["limit"] is None:
        search = None
    else:
        search = DBSearchFilters(
            limit=int(d.get("limit", 15)),
            min_date=_parse_date(d.get("min_date")),
            max_date=_parse_date(d.get("max_date")),
            pass_full_note_into_context=bool(d.get("pass_full_note_into_context", False)),
            search_mode=d.get("search_mode"),
        )

    tool_names = d.get("tools")
    if tool_names is None:
        tools = get_tool_definitions()
    else:
        tools = []
        for name in tool_names:
            tool = get_tool_definition(name)
            if tool is None:
                logger.warning("Agent %s references unknown tool %s", d.get("name"), name)
                continue
            tools.append(tool)

    template = [
        PromptMessage(role=m.get("role", "user"), content=m.get("content", ""))
        for m in d.get("prompt_template") or []
    ] or [PromptMessage("user", RAG_PROMPT)]

    return AgentConfig(
        name=d["name"],
        files=list(d.get("files") or []),
        db_search_filters=search,
        tool_definitions=tools,
        prompt_template=template,
    )


def load_agent_file(path: Path) -> AgentConfig | None:
    """Load one agent YAML file, or None if it is invalid."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Skipping agent file %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Skipping agent file %s: not a mapping", path)
        return None
    data.setdefault("name", path.stem)
    try:
        return agent_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping agent file %s: %s", path, e)
        return None


def load_agent_configs(vault_root: Path | None = None) -> list[AgentConfig]:
    """Built-in agents followed by the vault's custom agents.

    A custom agent with a built-in name replaces the built-in.
    """
    agents: dict[str, AgentConfig] = {a.name: a for a in EXAMPLE_AGENTS}
    if vault_root is not None:
        agents_dir = get_agents_dir(vault_root)
        if agents_dir.is_dir():
            for path in sorted(agents_dir.glob("*.y*ml")):
                agent = load_agent_file(path)
                if agent is not None:
                    agents[agent.name] = agent
    return list(agents.values())


def get_agent_config(name: str, vault_root: Path | None = None) -> AgentConfig | None:
    for agent in load_agent_configs(vault_root):
        if agent.name.lower() == name.lower():
            return agent
    return None
