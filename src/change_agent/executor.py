from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any

from deepagents import create_deep_agent
from deepagents.backends import FilesystemBackend

from .canonical import to_json_value
from .llm import get_chat_model

logger = logging.getLogger(__name__)

EXECUTOR_SYSTEM_PROMPT = (
    "You are the implementation agent of a software-change run. Edit files in the repository to "
    "carry out the plan you are given. Do not commit, push or touch version-control metadata. "
    "Finish with a short plain-text summary of what you changed."
)


def _content_to_text(content: Any) -> str:
    """Flatten the content shapes chat models return into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                elif item.get("content") is not None:
                    chunks.append(_content_to_text(item["content"]))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Final text of an agent response: the last message, ``output`` or ``content``."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def build_executor_message(prompt: str, context: dict[str, Any]) -> str:
    body = json.dumps(to_json_value(context), indent=2, sort_keys=True)
    return f"{prompt}\n\nContext:\n```json\n{body}\n```"


class DeepAgentExecutor:
    """Executor collaborator: a tool-using deep agent with filesystem access to the worktree."""

    def __init__(self, *, model_name: str, worktree_root: Path, repo_root: Path | None = None) -> None:
        self.model_name = model_name
        self.worktree_root = worktree_root
        self.repo_root = repo_root

    async def execute(self, prompt: str, *, context: dict[str, Any]) -> str:
        model = get_chat_model(model_name=self.model_name, repo_root=self.repo_root)
        backend = FilesystemBackend(root_dir=self.worktree_root, virtual_mode=True)
        agent = create_deep_agent(
            model=model,
            tools=[],
            backend=backend,
            system_prompt=EXECUTOR_SYSTEM_PROMPT,
            name="change-executor",
        )
        kind = context.get("kind", "execute")
        logger.info("executor invoked for %s in %s", kind, self.worktree_root)
        response = await agent.ainvoke(
            {"messages": [{"role": "user", "content": build_executor_message(prompt, context)}]},
            config={"configurable": {"thread_id": f"executor-{kind}-{uuid.uuid4().hex[:8]}"}},
        )
        text = extract_agent_text(response).strip()
        if not text:
            raise RuntimeError("Executor returned an empty summary")
        return text
