# src/contextcore/operators/__init__.py
"""Operators that offload transformation work to an external model client."""

from .batch import (
    BatchItem,
    BatchItemOutput,
    BatchOperator,
    BatchResult,
    ModelClient,
    extract_data,
    failed_outputs,
    llm_map,
    parse_response,
    reduce_outputs,
    render_prompt,
    successful_outputs,
)

__all__ = [
    "BatchItem",
    "BatchItemOutput",
    "BatchOperator",
    "BatchResult",
    "ModelClient",
    "extract_data",
    "failed_outputs",
    "llm_map",
    "parse_response",
    "reduce_outputs",
    "render_prompt",
    "successful_outputs",
]
