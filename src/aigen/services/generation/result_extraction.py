"""Provider payload inspection.

Providers may answer 2xx with an error body (a `detail` validation array or an
`error` string). `check_for_errors` turns those into `GenerationError`s before
any URL is read; the extraction helpers then pull media URLs out of the
various result shapes providers use.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from aigen.services.generation.classifier import (
    DEFAULT_ERROR_MESSAGE,
    extract_error_message,
    parse_error,
)
from aigen.services.generation.exceptions import ErrorKind, create_generation_error
from aigen.services.generation.models import GenerationUrls, JobStatusCheck


logger = logging.getLogger(__name__)

DEFAULT_URL_FIELDS = ("url", "image_url", "video_url", "output_url", "result_url")
THUMBNAIL_FIELDS = ("thumbnail_url", "thumbnailUrl", "thumbnail", "poster")

STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
PROCESSING_STATUSES = frozenset({"IN_QUEUE", "IN_PROGRESS"})
ERROR_LOG_LEVELS = frozenset({"ERROR", "FATAL"})


def check_for_errors(payload: Mapping[str, Any]) -> None:
    """Raise a classified `GenerationError` if `payload` reports a failure."""
    detail = payload.get("detail")
    if isinstance(detail, list) and detail:
        first = detail[0]
        if not isinstance(first, Mapping):
            return
        error_type = str(first.get("type") or "unknown")
        error_msg = str(first.get("msg") or DEFAULT_ERROR_MESSAGE)

        if error_type == "content_policy_violation":
            raise create_generation_error(ErrorKind.POLICY, error_msg)
        if "validation" in error_type:
            raise create_generation_error(
                ErrorKind.UNKNOWN, f"Invalid generation input: {error_msg}"
            )
        raise parse_error(error_msg)

    error = payload.get("error")
    if isinstance(error, str) and error:
        raise parse_error(error)


def _media_url(value: Any) -> str | None:
    if isinstance(value, Mapping):
        url = value.get("url")
        if isinstance(url, str) and url:
            return url
    return None


def extract_thumbnail_url(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    for field_name in THUMBNAIL_FIELDS:
        value = payload.get(field_name)
        if isinstance(value, str) and value:
            return value
        url = _media_url(value)
        if url:
            return url
    return None


def extract_result_urls(payload: Mapping[str, Any]) -> GenerationUrls:
    """Check `payload` for errors, then read its media URLs.

    Lookup order: `video.url`, an http `output` string, `images[0].url`,
    `image.url`. An empty `GenerationUrls` means nothing was found.
    """
    check_for_errors(payload)

    thumbnail_url = extract_thumbnail_url(payload)

    video_url = _media_url(payload.get("video"))
    if video_url:
        return GenerationUrls(video_url=video_url, thumbnail_url=thumbnail_url)

    output = payload.get("output")
    if isinstance(output, str) and output.startswith("http"):
        if ".mp4" in output or "video" in output:
            return GenerationUrls(video_url=output, thumbnail_url=thumbnail_url)
        return GenerationUrls(image_url=output, thumbnail_url=thumbnail_url)

    images = payload.get("images")
    if isinstance(images, list) and images:
        image_url = _media_url(images[0])
        if image_url:
            return GenerationUrls(image_url=image_url, thumbnail_url=thumbnail_url)

    image_url = _media_url(payload.get("image"))
    if image_url:
        return GenerationUrls(image_url=image_url, thumbnail_url=thumbnail_url)

    logger.warning(
        f"No media URL found in result; keys={sorted(str(k) for k in payload)}"
    )
    return GenerationUrls(thumbnail_url=thumbnail_url)


def extract_output_url(
    result: Any, url_fields: Sequence[str] | None = None
) -> str | None:
    """Find a single output URL in flat or nested (`data`/`output`/`result`) shapes."""
    if not isinstance(result, Mapping):
        return None
    fields = tuple(url_fields) if url_fields else DEFAULT_URL_FIELDS

    for field_name in fields:
        value = result.get(field_name)
        if isinstance(value, str) and value:
            return value

    url = _media_url(result.get("image")) or _media_url(result.get("video"))
    if url:
        return url

    for nested_key in ("data", "output", "result"):
        nested = result.get(nested_key)
        if not isinstance(nested, Mapping):
            continue
        for field_name in fields:
            value = nested.get(field_name)
            if isinstance(value, str) and value:
                return value
        url = _media_url(nested.get("image")) or _media_url(nested.get("video"))
        if url:
            return url
        break

    return None


def _status_string(status: Mapping[str, Any] | str | None) -> str:
    if isinstance(status, str):
        return status.upper()
    if isinstance(status, Mapping):
        return str(status.get("status") or "").upper()
    return ""


def check_status_for_errors(status: Mapping[str, Any]) -> JobStatusCheck:
    """Detect job failure even when the status string is not `FAILED`."""
    status_string = _status_string(status)

    status_error = status.get("error") or status.get("detail") or status.get("message")
    if isinstance(status_error, list):
        status_error = extract_error_message({"detail": status_error})

    logs = status.get("logs")
    error_logs = [
        entry
        for entry in (logs if isinstance(logs, list) else [])
        if isinstance(entry, Mapping)
        and str(entry.get("level") or "").upper() in ERROR_LOG_LEVELS
    ]
    log_message = None
    if error_logs:
        first = error_logs[0]
        log_message = first.get("message") or first.get("text") or first.get("content")

    error_message = status_error or log_message
    has_error = bool(status_error) or bool(error_logs)

    return JobStatusCheck(
        status=status_string,
        has_error=has_error,
        error_message=str(error_message) if error_message else None,
        should_stop=status_string == STATUS_FAILED or has_error,
    )


def is_job_complete(status: Mapping[str, Any] | str) -> bool:
    return _status_string(status) == STATUS_COMPLETED


def is_job_processing(status: Mapping[str, Any] | str) -> bool:
    return _status_string(status) in PROCESSING_STATUSES


def is_job_failed(status: Mapping[str, Any] | str) -> bool:
    return _status_string(status) == STATUS_FAILED
