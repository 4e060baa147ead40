"""JSON output formatter for gateway results.

Converts envelopes, bulk results, batch statuses and queue pass results
into plain JSON documents for the CLI's ``--output`` option.
"""

import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict

from product_gateway.models.data_models import BatchStatus, BulkResult, QueueJob, QueueRunResult
from product_gateway.models.response import ApiResponse


class JSONOutputFormatter:
    """
    Formats gateway results as JSON-serializable dictionaries.

    Example output for a bulk lookup::

        {
            "kind": "bulk",
            "summary": {"requested": 3, "found": 2, "failed": 1},
            "products": {"B000000001": {...}, "B000000002": {...}},
            "failed": ["B000000003"]
        }
    """

    def format(self, result: Any) -> Dict[str, Any]:
        """
        Format a result as a JSON-serializable dictionary.

        Args:
            result: ApiResponse, BulkResult, BatchStatus, QueueRunResult,
                QueueJob, a mapping, or ``None`` for an unavailable lookup

        Returns:
            Dictionary with a ``kind`` discriminator
        """
        if result is None:
            return {"kind": "empty", "success": False, "message": "No provider returned data"}
        if isinstance(result, ApiResponse):
            return {"kind": "response", **result.to_dict()}
        if isinstance(result, BulkResult):
            return self._format_bulk(result)
        if isinstance(result, BatchStatus):
            return {"kind": "batch", **result.to_dict()}
        if isinstance(result, QueueJob):
            return {"kind": "job", **result.to_dict()}
        if isinstance(result, QueueRunResult):
            return {"kind": "queue_pass", **asdict(result)}
        if isinstance(result, dict):
            return {"kind": "mapping", "data": _plain(result)}
        raise TypeError(f"Cannot format {type(result).__name__}")

    def _format_bulk(self, result: BulkResult) -> Dict[str, Any]:
        return {
            "kind": "bulk",
            "summary": {
                "requested": len(result.products) + len(result.failed),
                "found": len(result.products),
                "failed": len(result.failed),
            },
            "products": result.products,
            "failed": list(result.failed),
        }

    def dumps(self, result: Any) -> str:
        return json.dumps(self.format(result), indent=2, ensure_ascii=False, default=str)

    def save(self, result: Any, path: str = "out/result.json") -> None:
        """
        Save formatted result to a JSON file, creating parent directories.

        Args:
            result: Result to save
            path: Output file path (default: out/result.json)
        """
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self.dumps(result))


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _plain(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k.value if isinstance(k, Enum) else k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
