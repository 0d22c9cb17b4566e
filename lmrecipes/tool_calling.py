"""
Tool calling: a chat model replies with the name of a tool and the
arguments to call it with; the tool is executed and its output is
returned to the model as a ToolMessage, until the model replies with
an answer.

Tools are langchain BaseTool objects. Plain functions with type
annotations and a docstring are converted with langchain's `tool`
decorator when registered.

Main classes:
    ToolRegistry: the tools available to a model, by name

Main functions:
    execute_tool_calls, aexecute_tool_calls: run the tool calls of a
        model reply
    run_tool_loop, arun_tool_loop: let the model call tools until it
        answers
    tool_example_to_messages: few-shot examples of tool use

Example:

    ```python
    from lmrecipes.tool_calling import ToolRegistry, run_tool_loop
    from lmrecipes.language_models.langchain.models import (
        create_model_from_spec,
    )

    def multiply(a: int, b: int) -> int:
        \"\"\"Multiply two integers.\"\"\"
        return a * b

    registry = ToolRegistry([multiply])
    model = create_model_from_spec("OpenAI/gpt-4o-mini")
    transcript = run_tool_loop(model, "What is 3 * 12?", registry)
    print(transcript[-1].content)
    ```

Errors raised by tools, calls to unknown tools and calls with
malformed arguments do not interrupt the loop: they are returned to
the model as ToolMessages with status 'error', so that the model may
correct the call.
"""

import json
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import BaseModel
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    ToolCall,
    ToolMessage,
)
from langchain_core.runnables import Runnable
from langchain_core.tools import BaseTool, tool

from lmrecipes.utils.hash import generate_uuid
from lmrecipes.utils.logging import LoggerBase, get_logger

logger: LoggerBase = get_logger(__name__)

DEFAULT_TOOL_OUTPUT = "You have correctly called this tool."


class ToolLoopLimitError(RuntimeError):
    """The model kept calling tools beyond the allowed iterations"""


class ToolRegistry:
    """The tools available to a model, indexed by name.

    Args:
        tools: tools or plain functions to register
    """

    def __init__(
        self, tools: Sequence[BaseTool | Callable[..., Any]] = ()
    ) -> None:
        self._tools: dict[str, BaseTool] = {}
        for t in tools:
            self.register(t)

    def register(self, new_tool: BaseTool | Callable[..., Any]) -> BaseTool:
        """Add a tool. Functions are converted to tools, using their
        name and docstring.

        Raises:
            ValueError: if a tool with the same name is registered,
                or the function has no docstring
        """
        if not isinstance(new_tool, BaseTool):
            new_tool = tool(new_tool)
        if new_tool.name in self._tools:
            raise ValueError(f"Tool already registered: {new_tool.name}")
        self._tools[new_tool.name] = new_tool
        return new_tool

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def tools(self) -> list[BaseTool]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def _tool_output_to_str(result: Any) -> str:
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result)
    except (TypeError, ValueError):
        return str(result)


def _unknown_tool(
    name: str, call_id: str, registry: ToolRegistry, logger: LoggerBase
) -> ToolMessage:
    logger.error(f"Call to unknown tool '{name}'")
    return ToolMessage(
        content=f"Error: unknown tool '{name}'. Available tools: "
        + ", ".join(registry.names()),
        tool_call_id=call_id,
        name=name,
        status='error',
    )


def _tool_failure(
    name: str, call_id: str, error: Exception, logger: LoggerBase
) -> ToolMessage:
    logger.error(f"Tool '{name}' failed: {error}")
    return ToolMessage(
        content=f"Error: {error!r}\nPlease fix your mistakes.",
        tool_call_id=call_id,
        name=name,
        status='error',
    )


def execute_tool_call(
    call: ToolCall,
    registry: ToolRegistry,
    logger: LoggerBase = logger,
) -> ToolMessage:
    """
    Execute a single tool call.

    Returns:
        a ToolMessage answering the call. If the tool is unknown or
        raises an exception, the message has status 'error' and
        describes the problem.
    """
    name = call['name']
    call_id = call.get('id') or ""
    selected = registry.get(name)
    if selected is None:
        return _unknown_tool(name, call_id, registry, logger)

    try:
        result = selected.invoke(call['args'])
    except Exception as e:
        return _tool_failure(name, call_id, e, logger)

    return ToolMessage(
        content=_tool_output_to_str(result),
        tool_call_id=call_id,
        name=name,
    )


async def aexecute_tool_call(
    call: ToolCall,
    registry: ToolRegistry,
    logger: LoggerBase = logger,
) -> ToolMessage:
    """Asynchronous version of execute_tool_call. Tools defined by
    coroutine functions are awaited; synchronous tools run in an
    executor."""
    name = call['name']
    call_id = call.get('id') or ""
    selected = registry.get(name)
    if selected is None:
        return _unknown_tool(name, call_id, registry, logger)

    try:
        result = await selected.ainvoke(call['args'])
    except Exception as e:
        return _tool_failure(name, call_id, e, logger)

    return ToolMessage(
        content=_tool_output_to_str(result),
        tool_call_id=call_id,
        name=name,
    )


def _invalid_calls(
    message: AIMessage, logger: LoggerBase
) -> list[ToolMessage]:
    results: list[ToolMessage] = []
    for invalid in message.invalid_tool_calls:
        name = invalid.get('name') or "unknown"
        logger.warning(
            f"Malformed call to tool '{name}': {invalid.get('args')}"
        )
        results.append(
            ToolMessage(
                content=f"Error: the arguments of the call to '{name}' "
                f"are not valid JSON ({invalid.get('error') or 'parse error'})."
                " Please fix your mistakes.",
                tool_call_id=invalid.get('id') or "",
                name=name,
                status='error',
            )
        )
    return results


def execute_tool_calls(
    message: BaseMessage,
    registry: ToolRegistry,
    logger: LoggerBase = logger,
) -> list[ToolMessage]:
    """
    Execute the tool calls of a model reply, in order.

    Calls whose arguments could not be parsed by the model provider
    (the invalid_tool_calls of the reply) are not executed; they are
    answered by an error ToolMessage.

    Args:
        message: the model reply
        registry: the available tools
        logger: receives errors from tools

    Returns:
        one ToolMessage per (valid or invalid) tool call
    """
    if not isinstance(message, AIMessage):
        return []

    results: list[ToolMessage] = [
        execute_tool_call(call, registry, logger)
        for call in message.tool_calls
    ]
    return results + _invalid_calls(message, logger)


async def aexecute_tool_calls(
    message: BaseMessage,
    registry: ToolRegistry,
    logger: LoggerBase = logger,
) -> list[ToolMessage]:
    """Asynchronous version of execute_tool_calls. The calls are
    executed sequentially, in order."""
    if not isinstance(message, AIMessage):
        return []

    results: list[ToolMessage] = []
    for call in message.tool_calls:
        results.append(await aexecute_tool_call(call, registry, logger))
    return results + _invalid_calls(message, logger)


def _has_tool_calls(message: BaseMessage) -> bool:
    return isinstance(message, AIMessage) and bool(
        message.tool_calls or message.invalid_tool_calls
    )


def _start_transcript(
    messages: str | Sequence[BaseMessage],
) -> list[BaseMessage]:
    if isinstance(messages, str):
        return [HumanMessage(content=messages)]
    return list(messages)


def _bind(
    model: BaseChatModel | Runnable[Any, BaseMessage],
    registry: ToolRegistry,
) -> Runnable[Any, BaseMessage]:
    if isinstance(model, BaseChatModel) and len(registry):
        return model.bind_tools(registry.tools())
    return model


def run_tool_loop(
    model: BaseChatModel | Runnable[Any, BaseMessage],
    messages: str | Sequence[BaseMessage],
    registry: ToolRegistry,
    *,
    max_iterations: int = 5,
    logger: LoggerBase = logger,
) -> list[BaseMessage]:
    """
    Invoke the model, execute the tools it calls and return the
    results to it, until it replies without calling tools.

    Args:
        model: a chat model supporting bind_tools, or a runnable
            to which the tools were already bound
        messages: the conversation, or a user question
        registry: the available tools
        max_iterations: max number of model calls
        logger: receives errors from tools

    Returns:
        the conversation, including model replies and tool messages.
        The last message is the final reply of the model.

    Raises:
        ToolLoopLimitError: if the model still calls tools after
            max_iterations calls
    """
    bound = _bind(model, registry)
    transcript = _start_transcript(messages)
    for _ in range(max_iterations):
        reply = bound.invoke(transcript)
        transcript.append(reply)
        if not _has_tool_calls(reply):
            return transcript
        transcript.extend(execute_tool_calls(reply, registry, logger))

    raise ToolLoopLimitError(
        f"Model still calling tools after {max_iterations} iterations"
    )


async def arun_tool_loop(
    model: BaseChatModel | Runnable[Any, BaseMessage],
    messages: str | Sequence[BaseMessage],
    registry: ToolRegistry,
    *,
    max_iterations: int = 5,
    logger: LoggerBase = logger,
) -> list[BaseMessage]:
    """Asynchronous version of run_tool_loop. Tools are executed
    sequentially."""
    bound = _bind(model, registry)
    transcript = _start_transcript(messages)
    for _ in range(max_iterations):
        reply = await bound.ainvoke(transcript)
        transcript.append(reply)
        if not _has_tool_calls(reply):
            return transcript
        transcript.extend(await aexecute_tool_calls(reply, registry, logger))

    raise ToolLoopLimitError(
        f"Model still calling tools after {max_iterations} iterations"
    )


def tool_example_to_messages(
    input: str,
    tool_calls: Sequence[BaseModel | ToolCall],
    tool_outputs: Sequence[str] | None = None,
    ai_response: str | None = None,
) -> list[BaseMessage]:
    """
    Convert an example of tool use into the messages of a few-shot
    prompt: the user input, the model reply calling the tools, the
    tool outputs and optionally the final model reply.

    Args:
        input: the user input
        tool_calls: the calls the model should make. Pydantic
            instances are called as tools named after their class
            (the extraction schemas bound with bind_tools).
        tool_outputs: the outputs of the tools. Defaults to a
            message confirming the call for each tool.
        ai_response: the final reply of the model

    Returns:
        the list of messages

    Raises:
        ValueError: if the number of outputs differs from the number
            of calls
    """
    calls: list[ToolCall] = []
    for index, call in enumerate(tool_calls):
        if isinstance(call, BaseModel):
            name = call.__class__.__name__
            args = call.model_dump()
        else:
            name = call['name']
            args = call['args']
        calls.append(
            ToolCall(
                name=name,
                args=args,
                id=generate_uuid(f"{input}:{index}:{name}"),
            )
        )

    outputs = (
        list(tool_outputs)
        if tool_outputs is not None
        else [DEFAULT_TOOL_OUTPUT] * len(calls)
    )
    if len(outputs) != len(calls):
        raise ValueError(
            f"{len(outputs)} tool outputs given for {len(calls)} calls"
        )

    messages: list[BaseMessage] = [
        HumanMessage(content=input),
        AIMessage(content="", tool_calls=calls),
    ]
    for output, call in zip(outputs, calls):
        messages.append(
            ToolMessage(content=output, tool_call_id=call['id'] or "")
        )
    if ai_response:
        messages.append(AIMessage(content=ai_response))
    return messages
