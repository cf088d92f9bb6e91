"""Step executors, one per step type.

Every executor has the signature ``async (step, view, services) -> StepOutcome``
and reads the execution context only through the read-only :class:`ContextView`.
Failures are raised as :class:`StepExecutionError`; the engine records them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional
from urllib.parse import urlencode

from .config import FlowgateConfig
from .context import ContextView
from .errors import ExpressionError, StepExecutionError, TransportError
from .expressions import evaluate_bool
from .llm import PydanticAITextGenerator, TextGenerationService
from .models import (
    ActionConfig,
    ConditionConfig,
    OutputConfig,
    SearchConfig,
    SimpleCondition,
    Step,
    StepType,
    TransformConfig,
)
from .network import ActionResponse, HttpxActionExecutor, NetworkActionExecutor
from .search import HttpSearchService, InMemorySearchService, SearchService
from .templating import get_path, render, render_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepOutcome:
    status: Literal["success", "waiting_approval"] = "success"
    output: Any = None
    branch: Optional[str] = None


@dataclass
class ExecutorServices:
    """Collaborators available to executors."""

    network: NetworkActionExecutor
    text_generator: Optional[TextGenerationService] = None
    search: Optional[SearchService] = None

    @classmethod
    def default(cls) -> "ExecutorServices":
        return cls(network=HttpxActionExecutor())

    @classmethod
    def from_config(cls, config: FlowgateConfig) -> "ExecutorServices":
        """Build the production adapters described by ``config``."""
        network = HttpxActionExecutor(timeout=config.http.timeout_seconds)
        search: SearchService = (
            HttpSearchService(config.http.search_url, network)
            if config.http.search_url
            else InMemorySearchService()
        )
        return cls(
            network=network,
            text_generator=PydanticAITextGenerator(
                model=config.llm.model, max_tokens=config.llm.max_tokens
            ),
            search=search,
        )


Executor = Callable[[Step, ContextView, ExecutorServices], Awaitable[StepOutcome]]


def _require_text_generator(step: Step, services: ExecutorServices) -> TextGenerationService:
    if services.text_generator is None:
        raise StepExecutionError(step.id, "no text generation service configured")
    return services.text_generator


async def _invoke(
    step: Step,
    services: ExecutorServices,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
) -> ActionResponse:
    try:
        response = await services.network.invoke(method, url, headers=headers, body=body)
    except TransportError as exc:
        raise StepExecutionError(step.id, str(exc), cause=exc) from exc
    if not response.ok:
        raise StepExecutionError(step.id, f"{method} {url} returned {response.status_code}")
    return response


async def _generate(
    step: Step,
    services: ExecutorServices,
    prompt: str,
    max_tokens: Optional[int] = None,
    model: Optional[str] = None,
) -> str:
    generator = _require_text_generator(step, services)
    try:
        if model:
            return await generator.generate(prompt, max_tokens, model=model)
        return await generator.generate(prompt, max_tokens)
    except TransportError as exc:
        raise StepExecutionError(step.id, str(exc), cause=exc) from exc


# ---------------------------------------------------------------------------
# trigger


async def execute_trigger(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    return StepOutcome(output=view.trigger_payload)


# ---------------------------------------------------------------------------
# search


async def execute_search(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    config: SearchConfig = step.config  # type: ignore[assignment]
    scope = view.scope()
    query = render(config.query, scope)
    filters = render_value(config.filters, scope)

    if config.search_type == "external":
        params = urlencode({"q": query, "limit": config.max_results})
        separator = "&" if "?" in (config.url or "") else "?"
        response = await _invoke(step, services, "GET", f"{config.url}{separator}{params}")
        body = response.body
        if isinstance(body, list):
            results = body
        elif isinstance(body, dict):
            results = body.get("results", [])
        else:
            raise StepExecutionError(step.id, "external search returned a non-JSON body")
        results = list(results)[: config.max_results]
    else:
        if services.search is None:
            raise StepExecutionError(step.id, "no search service configured")
        try:
            results = await services.search.search(query, config.max_results, filters)
        except TransportError as exc:
            raise StepExecutionError(step.id, str(exc), cause=exc) from exc

    output: Dict[str, Any] = {"results": results, "count": len(results), "query": query}
    if config.summarize_prompt:
        prompt = render(config.summarize_prompt, {**scope, "results": results, "query": query})
        output["summary"] = await _generate(step, services, prompt, config.summary_max_tokens)
    logger.debug(f"Search step {step.id} returned {len(results)} result(s)")
    return StepOutcome(output=output)


# ---------------------------------------------------------------------------
# action


async def execute_action(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    config: ActionConfig = step.config  # type: ignore[assignment]
    scope = view.scope()

    if config.action_type == "api_call" and config.api is not None:
        api = config.api
        url = render(api.url, scope)
        headers = {key: render(value, scope) for key, value in api.headers.items()}
        body = render_value(api.body, scope)
        response = await _invoke(step, services, api.method, url, headers=headers, body=body)
        return StepOutcome(output={"status": response.status_code, "data": response.body})

    if config.action_type == "llm_call" and config.llm is not None:
        prompt = render(config.llm.prompt, scope)
        text = await _generate(step, services, prompt, config.llm.max_tokens, config.llm.model)
        return StepOutcome(output={"response": text, "model": config.llm.model})

    if config.action_type == "notification" and config.notification is not None:
        notification = config.notification
        subject = render(notification.subject, scope)
        message = render(notification.template, scope)
        if notification.channel == "slack":
            payload: Dict[str, Any] = {"text": f"*{subject}*\n{message}" if subject else message}
        elif notification.channel == "teams":
            payload = {"title": subject, "text": message}
        else:
            payload = {
                "subject": subject,
                "body": message,
                "recipients": notification.recipients,
                "execution_id": view.execution_id,
                "workflow_id": view.workflow_id,
            }
        await _invoke(step, services, "POST", notification.url, body=payload)
        return StepOutcome(
            output={
                "channel": notification.channel,
                "recipients": len(notification.recipients),
                "sent": True,
            }
        )

    raise StepExecutionError(step.id, f"unknown action type '{config.action_type}'")


# ---------------------------------------------------------------------------
# condition


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_simple(condition: SimpleCondition, data: Any, scope: Dict[str, Any]) -> bool:
    actual = get_path(data, condition.field)
    expected = render_value(condition.value, scope)
    operator = condition.operator

    if operator == "is_empty":
        return actual is None or actual == "" or actual == [] or actual == {}
    if operator == "is_not_empty":
        return not (actual is None or actual == "" or actual == [] or actual == {})
    if operator == "contains":
        if isinstance(actual, (list, tuple, dict)):
            return expected in actual
        return actual is not None and str(expected) in str(actual)
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right

    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        equal = _as_number(expected) == actual
    else:
        equal = actual == expected or (
            actual is not None and expected is not None and str(actual) == str(expected)
        )
    return equal if operator == "equals" else not equal


async def execute_condition(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    config: ConditionConfig = step.config  # type: ignore[assignment]
    scope = view.scope()

    if config.condition_type == "simple" and config.simple is not None:
        decision = evaluate_simple(config.simple, view.previous_output, scope)
    elif config.condition_type == "llm_decision" and config.llm_decision is not None:
        criteria = ", ".join(config.llm_decision.criteria) or render(
            config.llm_decision.prompt, scope
        )
        prompt = (
            'Based on the following input and criteria, answer with only "yes" or "no".\n\n'
            f"Input: {json.dumps(view.previous_output, default=str)}\n\n"
            f"Criteria: {criteria}\n\n"
            "Answer (yes/no):"
        )
        answer = await _generate(step, services, prompt, 10)
        decision = "yes" in answer.lower()
    else:
        try:
            decision = evaluate_bool(config.expression or "", scope)
        except ExpressionError as exc:
            raise StepExecutionError(step.id, str(exc), cause=exc) from exc

    # conditions pass their input through; the decision is the branch
    return StepOutcome(output=view.previous_output, branch="true" if decision else "false")


# ---------------------------------------------------------------------------
# transform


def _resolve_source(source: Optional[str], view: ContextView, scope: Dict[str, Any]) -> Any:
    if not source:
        return view.previous_output
    if "{{" in source:
        return render_value(source, scope)
    return get_path(scope, source)


def _map_item(item: Any, config: TransformConfig) -> Dict[str, Any]:
    return {mapping.to: get_path(item, mapping.from_) for mapping in config.mappings}


def _pick_item(item: Any, fields: List[str]) -> Dict[str, Any]:
    return {name: get_path(item, name) for name in fields}


def _numbers(items: List[Any], field: Optional[str]) -> List[float]:
    values = []
    for item in items:
        value = get_path(item, field) if field else item
        number = _as_number(value)
        values.append(number if number is not None else 0.0)
    return values


def _aggregate(data: Any, config: TransformConfig) -> Any:
    if not isinstance(data, list):
        return data
    if config.operation == "count":
        return len(data)
    values = _numbers(data, config.field)
    if config.operation == "sum":
        return sum(values)
    if config.operation == "average":
        return sum(values) / len(values) if values else 0
    if not values:
        return None
    return min(values) if config.operation == "min" else max(values)


def _merge(parts: List[Any], strategy: str) -> Any:
    if strategy == "concat":
        merged: List[Any] = []
        for part in parts:
            if isinstance(part, list):
                merged.extend(part)
            elif part is not None:
                merged.append(part)
        return merged
    if strategy == "zip":
        length = max((len(p) if isinstance(p, list) else 1 for p in parts), default=0)
        return [
            [
                (p[i] if i < len(p) else None) if isinstance(p, list) else p
                for p in parts
            ]
            for i in range(length)
        ]
    result: Dict[str, Any] = {}
    for part in parts:
        if isinstance(part, dict):
            result.update(part)
    return result


async def execute_transform(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    config: TransformConfig = step.config  # type: ignore[assignment]
    scope = view.scope()
    data = _resolve_source(config.source, view, scope)
    kind = config.transform_type

    if kind == "map":
        if isinstance(data, list):
            output = [_map_item(i, config) for i in data]
        else:
            output = _map_item(data, config)
    elif kind == "pick":
        if isinstance(data, list):
            output = [_pick_item(i, config.fields) for i in data]
        else:
            output = _pick_item(data, config.fields)
    elif kind == "filter":
        if not isinstance(data, list):
            output = data
        else:
            try:
                output = [
                    item
                    for item in data
                    if evaluate_bool(config.condition or "", {**scope, "item": item})
                ]
            except ExpressionError as exc:
                raise StepExecutionError(step.id, str(exc), cause=exc) from exc
    elif kind == "aggregate":
        output = _aggregate(data, config)
    elif kind == "merge":
        output = _merge([_resolve_source(s, view, scope) for s in config.sources], config.strategy)
    else:
        output = render(config.template or "", {**scope, "data": data})
    return StepOutcome(output=output)


# ---------------------------------------------------------------------------
# output


async def execute_output(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    config: OutputConfig = step.config  # type: ignore[assignment]
    scope = view.scope()
    value: Any = view.previous_output
    if config.template:
        value = render_value(config.template, scope)
    if config.format == "text" and not isinstance(value, str):
        value = "" if value is None else json.dumps(value, default=str)

    if config.output_type == "log":
        logger.info(f"Workflow {view.workflow_id} output: {value}")
    elif config.output_type == "webhook" and config.webhook_url:
        await _invoke(step, services, "POST", config.webhook_url, body=value)
    return StepOutcome(output=value)


# ---------------------------------------------------------------------------
# approval


async def execute_approval(
    step: Step, view: ContextView, services: ExecutorServices
) -> StepOutcome:
    raise StepExecutionError(step.id, "approval steps are handled by the approval gate")


EXECUTORS: Dict[StepType, Executor] = {
    StepType.TRIGGER: execute_trigger,
    StepType.SEARCH: execute_search,
    StepType.ACTION: execute_action,
    StepType.CONDITION: execute_condition,
    StepType.TRANSFORM: execute_transform,
    StepType.OUTPUT: execute_output,
    StepType.APPROVAL: execute_approval,
}

_missing = set(StepType) - set(EXECUTORS)
if _missing:
    raise RuntimeError(
        f"No executor registered for step type(s): {sorted(t.value for t in _missing)}"
    )


def get_executor(step_type: StepType) -> Executor:
    return EXECUTORS[step_type]
