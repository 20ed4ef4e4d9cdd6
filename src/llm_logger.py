"""
LLM Request Logger
==================
Writes planning prompts and raw model responses to JSON files for debugging.
Disabled unless a logs directory is configured (LLM_LOGS_PATH).
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _get_log_dir(logs_base_path: str, feature_id: Optional[str]) -> Path:
    """Log directory for one feature, or a shared bucket when the call has no feature."""
    log_dir = Path(logs_base_path) / (feature_id or "_unscoped")
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def log_llm_request(
    logs_base_path: Optional[str],
    feature_id: Optional[str],
    prompt: str,
    model: str,
    config: Dict[str, Any] = None,
) -> Optional[str]:
    """
    Log a prompt sent to the model.

    Args:
        logs_base_path: Logs directory; nothing is written when None
        feature_id: Feature the call belongs to
        prompt: Full prompt text
        model: Model name the prompt was sent to
        config: Extra call options (temperature, schema name, ...)

    Returns:
        Path to the log file, or None when logging is disabled
    """
    if not logs_base_path:
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    log_file = _get_log_dir(logs_base_path, feature_id) / f"request_{timestamp}.json"

    log_entry = {
        "timestamp": datetime.now().isoformat(),
        "feature_id": feature_id,
        "model": model,
        "total_chars": len(prompt),
        "estimated_tokens": len(prompt) // 4,
        "prompt": prompt,
        "config": config or {},
    }

    with open(log_file, 'w', encoding='utf-8') as f:
        json.dump(log_entry, f, indent=2)

    return str(log_file)


def log_llm_response(
    logs_base_path: Optional[str],
    feature_id: Optional[str],
    model: str,
    raw_text: Optional[str],
    status: str = "unknown",
) -> Optional[str]:
    """
    Log the raw model response and how the call ended.

    Returns:
        Path to the log file, or None when logging is disabled
    """
    if not logs_base_path:
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    log_file = _get_log_dir(logs_base_path, feature_id) / f"response_{timestamp}.json"

    log_entry = {
        "timestamp": datetime.now().isoformat(),
        "feature_id": feature_id,
        "model": model,
        "status": status,
        "content": raw_text or "",
    }

    with open(log_file, 'w', encoding='utf-8') as f:
        json.dump(log_entry, f, indent=2)

    logger.debug(f"[LOG] Response saved: {log_file}")
    return str(log_file)
