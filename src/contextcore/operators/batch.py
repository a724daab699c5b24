# src/contextcore/operators/batch.py
"""
Concurrency-limited batch operator over an external model client.

``BatchOperator.map`` renders one prompt per input, calls the model
client through a fixed-size worker pool (an ``asyncio.Semaphore`` of size
``concurrency``), parses each response as JSON and validates it against an
optional pydantic output model.

Guarantees:

- Outputs are index-stable: ``outputs[i]`` belongs to ``inputs[i]``
  whatever the completion order.
- Only :class:`SchemaValidationError` and :class:`ResponseParseError` are
  retried, up to ``max_retries`` times, waiting ``retry_delay * attempt``
  seconds before each retry.
- Any other error is terminal for that one input and recorded in its
  output; siblings are neither cancelled nor blocked.

Example::

    class Label(BaseModel):
        label: str

    operator = BatchOperator(client, BatchConfig(concurrency=3))
    result = await operator.map(
        [{"text": "..."}, {"text": "..."}],
        output_schema=Label,
        prompt_template="Classify: {item}",
    )
    labels = extract_data(result.outputs)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import BatchConfig
from ..exceptions import ResponseParseError, SchemaValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL)


class ModelClient(Protocol):
    """External model collaborator: succeed with raw text or raise."""

    async def call(self, prompt: str, schema: Optional[Dict[str, Any]] = None) -> str: ...


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class BatchItem:
    """One input to :meth:`BatchOperator.map`."""

    id: str
    data: Any
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchItemOutput:
    """
    Per-input result.

    Exactly one of ``data`` / ``error`` is meaningful: ``error`` is None
    on success. ``exception`` keeps the last exception raised for a failed
    item (a retried :class:`SchemaValidationError` carries its ``details``
    and ``attempt``).
    """

    id: str
    data: Any = None
    error: Optional[str] = None
    attempts: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[Exception] = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.model_dump(mode="json") if isinstance(self.data, BaseModel) else self.data
        return {
            "id": self.id,
            "data": data,
            "error": self.error,
            "attempts": self.attempts,
            "metadata": self.metadata,
        }


@dataclass
class BatchResult:
    outputs: List[BatchItemOutput] = field(default_factory=list)
    peak_in_flight: int = 0

    @property
    def total(self) -> int:
        return len(self.outputs)

    @property
    def successful(self) -> int:
        return sum(1 for o in self.outputs if o.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful


# =============================================================================
# Prompt / response handling
# =============================================================================


def render_prompt(template: str, data: Any) -> str:
    """Replace ``{item}`` and ``{data}`` with the JSON encoding of ``data``."""
    encoded = json.dumps(data, default=str)
    return template.replace("{item}", encoded).replace("{data}", encoded)


def parse_response(raw: str, output_schema: Optional[Type[BaseModel]] = None) -> Any:
    """
    Parse a model response as JSON (a surrounding Markdown code fence is
    tolerated) and validate it against ``output_schema`` when given.

    Raises:
        ResponseParseError: The text is not JSON.
        SchemaValidationError: The JSON does not match ``output_schema``.
    """
    text = raw.strip() if isinstance(raw, str) else ""
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ResponseParseError(
            raw=str(raw)[:200],
            message=f"Failed to parse response as JSON: {str(raw)[:200]}",
        ) from exc

    if output_schema is None:
        return parsed
    try:
        return output_schema.model_validate(parsed)
    except ValidationError as exc:
        raise SchemaValidationError(details=exc.errors(), message=f"Schema validation failed: {exc}") from exc


def _as_item(value: Any, index: int) -> BatchItem:
    if isinstance(value, BatchItem):
        return value
    if isinstance(value, dict) and "id" in value and "data" in value:
        return BatchItem(id=str(value["id"]), data=value["data"], metadata=dict(value.get("metadata") or {}))
    return BatchItem(id=str(index), data=value)


# =============================================================================
# Operator
# =============================================================================


class BatchOperator:
    """
    Bounded-parallelism map over a model client.

    Args:
        client: Object with ``async call(prompt, schema) -> str``.
        config: Pool size, retry bound, backoff and default template.
    """

    def __init__(self, client: ModelClient, config: Optional[BatchConfig] = None) -> None:
        self.client = client
        self.config = config or BatchConfig()

    async def map(
        self,
        inputs: Iterable[Any],
        output_schema: Optional[Type[BaseModel]] = None,
        prompt_template: Optional[str] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> BatchResult:
        """
        Process every input and return index-stable outputs.

        Inputs may be :class:`BatchItem` objects, ``{"id", "data"}`` dicts
        or plain values (the position becomes the id).
        """
        items = [_as_item(value, i) for i, value in enumerate(inputs)]
        template = prompt_template or self.config.prompt_template
        schema_json = output_schema.model_json_schema() if output_schema is not None else None
        semaphore = asyncio.Semaphore(self.config.concurrency)
        total = len(items)
        completed = 0
        in_flight = 0
        peak = 0

        async def run(item: BatchItem) -> BatchItemOutput:
            nonlocal completed, in_flight, peak
            async with semaphore:
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    output = await self._process(item, template, output_schema, schema_json)
                finally:
                    in_flight -= 1
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)
            return output

        logger.debug("Batch map of %d items with concurrency %d", total, self.config.concurrency)
        outputs = await asyncio.gather(*(run(item) for item in items))
        result = BatchResult(outputs=list(outputs), peak_in_flight=peak)
        logger.info("Batch map finished: %d/%d successful", result.successful, result.total)
        return result

    async def _process(
        self,
        item: BatchItem,
        template: str,
        output_schema: Optional[Type[BaseModel]],
        schema_json: Optional[Dict[str, Any]],
    ) -> BatchItemOutput:
        prompt = render_prompt(template, item.data)
        max_attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                raw = await self.client.call(prompt, schema_json)
                data = parse_response(raw, output_schema)
                return BatchItemOutput(id=item.id, data=data, attempts=attempt, metadata=item.metadata)
            except (SchemaValidationError, ResponseParseError) as exc:
                exc.attempt = attempt
                last_error = exc
                if attempt == max_attempts:
                    break
                logger.debug("Item %s attempt %d failed (%s), retrying", item.id, attempt, exc)
                await asyncio.sleep(self.config.retry_delay * attempt)
            except Exception as exc:
                logger.warning("Item %s failed: %s", item.id, exc)
                return BatchItemOutput(
                    id=item.id,
                    error=f"{type(exc).__name__}: {exc}",
                    attempts=attempt,
                    metadata=item.metadata,
                    exception=exc,
                )

        logger.warning("Item %s exhausted %d attempts: %s", item.id, max_attempts, last_error)
        return BatchItemOutput(
            id=item.id,
            error=str(last_error),
            attempts=max_attempts,
            metadata=item.metadata,
            exception=last_error,
        )

    async def map_jsonl(
        self,
        input_path: Path,
        output_path: Path,
        output_schema: Optional[Type[BaseModel]] = None,
        prompt_template: Optional[str] = None,
    ) -> BatchResult:
        """Map over a JSONL file of inputs and write one JSON line per output, in input order."""
        lines = Path(input_path).read_text(encoding="utf-8").splitlines()
        inputs = [json.loads(line) for line in lines if line.strip()]
        result = await self.map(inputs, output_schema, prompt_template)

        output_path = Path(output_path)
        tmp_path = output_path.with_suffix(output_path.suffix + ".tmp")
        tmp_path.write_text(
            "".join(json.dumps(o.to_dict(), default=str) + "\n" for o in result.outputs),
            encoding="utf-8",
        )
        tmp_path.replace(output_path)
        return result


# =============================================================================
# Functional API / helpers
# =============================================================================


async def llm_map(
    inputs: Iterable[Any],
    prompt_template: str,
    output_schema: Optional[Type[BaseModel]],
    client: ModelClient,
    concurrency: int = 5,
    max_retries: int = 3,
    retry_delay: float = 1.0,
) -> BatchResult:
    """
    One-shot form of :meth:`BatchOperator.map`.

    Raises:
        ValueError: If ``concurrency < 1`` (or another setting is invalid).
    """
    try:
        config = BatchConfig(concurrency=concurrency, max_retries=max_retries, retry_delay=retry_delay)
    except ValidationError as exc:
        raise ValueError(f"Invalid batch settings: {exc}") from exc
    return await BatchOperator(client, config).map(inputs, output_schema, prompt_template)


def successful_outputs(outputs: Sequence[BatchItemOutput]) -> List[BatchItemOutput]:
    return [o for o in outputs if o.success]


def failed_outputs(outputs: Sequence[BatchItemOutput]) -> List[BatchItemOutput]:
    return [o for o in outputs if not o.success]


def extract_data(outputs: Sequence[BatchItemOutput]) -> List[Any]:
    """Data of the successful outputs, in order."""
    return [o.data for o in outputs if o.success]


def reduce_outputs(
    outputs: Sequence[BatchItemOutput],
    reducer: Callable[[T, BatchItemOutput], T],
    initial: T,
) -> T:
    acc = initial
    for output in outputs:
        acc = reducer(acc, output)
    return acc
