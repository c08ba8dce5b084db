"""Datamarket LLM - bounded tool-calling loop for the agents' chat endpoints.

Claude models go through Anthropic, everything else through OpenAI. Tool
handlers are async callables taking the model's arguments as a dict; a
MarketError raised by a handler is returned to the model as
`{"error": ..., "code": ...}` so it can recover in the next step.

Example:
    async def lookup(args):
        return catalog.find(args["query"]).to_public_dict()

    tools = [Tool(
        name="find_matching_resource",
        description="Find a data resource",
        parameters={"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
        handler=lookup,
    )]
    text = await run_tools("claude-sonnet-4-20250514", system, "I need housing data", tools, max_steps=8)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import MarketError
from .log import log


MAX_TOKENS = 1024


@dataclass
class Tool:
    """A function the model may call."""
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict], Awaitable[Any]]

    async def call(self, arguments: dict) -> Any:
        log.process(f"Tool: {self.name}", {k: v for k, v in arguments.items()})
        try:
            return await self.handler(arguments)
        except MarketError as e:
            log.warn(f"{self.name} failed", e.message)
            result = {"error": e.message, "code": e.code}
            if e.details is not None:
                result["details"] = e.details
            return result


def is_claude(model: str) -> bool:
    return "claude" in model.lower()


def _dump(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


async def run_tools(
    model: str,
    system: str,
    prompt: str,
    tools: list[Tool],
    max_steps: int,
    client: Any = None,
) -> str:
    """Run the model until it answers without tool calls or the budget ends.

    Args:
        model: Model name; "claude" in the name selects Anthropic
        system: System prompt
        prompt: User message
        tools: Callable tools
        max_steps: Maximum model calls
        client: Pre-built async SDK client (a fresh one otherwise)

    Returns:
        The last text the model produced
    """
    if is_claude(model):
        return await _run_anthropic(model, system, prompt, tools, max_steps, client)
    return await _run_openai(model, system, prompt, tools, max_steps, client)


async def _run_anthropic(model, system, prompt, tools, max_steps, client) -> str:
    if client is None:
        from anthropic import AsyncAnthropic
        client = AsyncAnthropic()

    by_name = {t.name: t for t in tools}
    specs = [{"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools]
    messages: list[dict] = [{"role": "user", "content": prompt}]
    text = ""

    for step in range(max_steps):
        response = await client.messages.create(
            model=model,
            max_tokens=MAX_TOKENS,
            system=system,
            messages=messages,
            tools=specs,
        )

        content = []
        calls = []
        for block in response.content:
            if block.type == "text":
                content.append({"type": "text", "text": block.text})
                if block.text:
                    text = block.text
            elif block.type == "tool_use":
                content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
                calls.append(block)

        if not calls:
            return text
        messages.append({"role": "assistant", "content": content})

        results = []
        for call in calls:
            tool = by_name.get(call.name)
            if tool is None:
                output = {"error": f"Unknown tool: {call.name}", "code": -32601}
            else:
                output = await tool.call(dict(call.input or {}))
            results.append({"type": "tool_result", "tool_use_id": call.id, "content": _dump(output)})
        messages.append({"role": "user", "content": results})

    log.warn("Step limit reached", f"{max_steps} steps")
    return text


async def _run_openai(model, system, prompt, tools, max_steps, client) -> str:
    if client is None:
        from openai import AsyncOpenAI
        client = AsyncOpenAI()

    by_name = {t.name: t for t in tools}
    specs = [
        {"type": "function", "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
        for t in tools
    ]
    messages: list[dict] = [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]
    text = ""

    for step in range(max_steps):
        response = await client.chat.completions.create(
            model=model,
            max_completion_tokens=MAX_TOKENS,
            messages=messages,
            tools=specs,
        )
        message = response.choices[0].message
        if message.content:
            text = message.content

        calls = message.tool_calls or []
        if not calls:
            return text

        messages.append({
            "role": "assistant",
            "content": message.content,
            "tool_calls": [
                {"id": c.id, "type": "function", "function": {"name": c.function.name, "arguments": c.function.arguments}}
                for c in calls
            ],
        })

        for call in calls:
            tool = by_name.get(call.function.name)
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                arguments = None

            if tool is None:
                output = {"error": f"Unknown tool: {call.function.name}", "code": -32601}
            elif not isinstance(arguments, dict):
                output = {"error": "Tool arguments must be a JSON object", "code": -32602}
            else:
                output = await tool.call(arguments)
            messages.append({"role": "tool", "tool_call_id": call.id, "content": _dump(output)})

    log.warn("Step limit reached", f"{max_steps} steps")
    return text
