"""
Retrying runner for the external proving bridge.

Poseidon2 hashing and proof generation are delegated to a node script
(`scripts/bb_bridge.mjs`) that speaks one JSON request on stdin and one JSON
response on stdout. Transient failures (timeouts, network errors while the
script fetches artifacts) are retried with exponential backoff; anything
else surfaces after the last attempt as SubprocessRetryError.
"""
from __future__ import annotations

import json
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from notewallet.api.logging_config import get_logger

logger = get_logger("api.subprocess_retry")

_TRANSIENT_MARKERS = ("econnrefused", "enotfound", "etimedout", "connection", "timeout", "429", "rate limit")


class SubprocessRetryError(Exception):
    """Raised when a subprocess fails after all retries"""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _is_transient(stderr: str) -> bool:
    s = stderr.lower()
    return any(m in s for m in _TRANSIENT_MARKERS)


def run_with_retry(
    cmd: List[str],
    max_retries: int = 3,
    timeout: float = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    input_text: Optional[str] = None,
    description: str = "Command",
    on_attempt: Optional[Callable[[int, str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> subprocess.CompletedProcess:
    """
    Run `cmd`, retrying transient failures with 1s, 2s, 4s... backoff.

    A non-zero exit whose stderr does not look transient is not retried:
    the bridge rejects bad inputs deterministically, and rerunning a proof
    for the same bad witness only burns minutes.
    """
    last_error = ""

    for attempt in range(max_retries):
        status_msg = f"{description} (attempt {attempt + 1}/{max_retries})"
        logger.debug(status_msg)
        if on_attempt:
            on_attempt(attempt + 1, status_msg)

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                env=env,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            last_error = f"timed out after {timeout}s"
            logger.warning(f"{description} {last_error}")
        except OSError as e:
            # missing binary or script: retrying will not help
            raise SubprocessRetryError(f"{description} could not start: {e}") from e
        else:
            if result.returncode == 0:
                logger.debug(f"{description} ok")
                return result

            stderr = result.stderr or ""
            last_error = stderr[:500]
            logger.warning(f"{description} failed with exit code {result.returncode}: {last_error}")
            if not _is_transient(stderr):
                raise SubprocessRetryError(
                    f"{description} failed with exit code {result.returncode}: {last_error}",
                    returncode=result.returncode,
                    stderr=stderr,
                )

        if attempt < max_retries - 1:
            wait = 2 ** attempt
            logger.info(f"Retrying {description} in {wait}s")
            sleep(wait)

    raise SubprocessRetryError(f"{description} failed after {max_retries} attempts. Last error: {last_error}")


def run_json_script_with_retry(
    cmd: List[str],
    payload: Dict[str, Any],
    max_retries: int = 3,
    timeout: float = 60,
    cwd: Optional[Path] = None,
    env: Optional[dict] = None,
    description: str = "Script",
    runner: Callable[..., subprocess.CompletedProcess] = run_with_retry,
) -> Dict[str, Any]:
    """
    Send `payload` as JSON on stdin and parse the script's JSON stdout.

    The script reports its own failures as {"ok": false, "error": "..."}.
    """
    result = runner(
        cmd=cmd,
        max_retries=max_retries,
        timeout=timeout,
        cwd=cwd,
        env=env,
        input_text=json.dumps(payload),
        description=description,
    )

    try:
        output = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise SubprocessRetryError(
            f"Failed to parse {description} output as JSON: {e}. Output: {result.stdout[:500]}"
        ) from e

    if not isinstance(output, dict):
        raise SubprocessRetryError(f"{description} returned {type(output).__name__}, expected an object")
    if output.get("ok") is False:
        raise SubprocessRetryError(f"{description} reported an error: {output.get('error')}")
    return output


__all__ = ["SubprocessRetryError", "run_with_retry", "run_json_script_with_retry"]
