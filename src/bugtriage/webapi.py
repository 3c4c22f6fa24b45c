"""Shared ``requests`` helper for the Slack and Linear clients."""

import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_RETRYABLE = (requests.ConnectionError, requests.Timeout)


def request_json(
    method: str,
    url: str,
    *,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    **kwargs,
) -> dict:
    """Send a request and return the decoded JSON body.

    Connection errors and timeouts are retried once. HTTP error statuses
    raise ``requests.HTTPError`` via ``raise_for_status``.
    """
    send = session.request if session is not None else requests.request
    try:
        resp = send(method, url, timeout=timeout, **kwargs)
    except _RETRYABLE as e:
        logger.warning("%s %s failed (%s), retrying once", method, url, e)
        resp = send(method, url, timeout=timeout, **kwargs)
    resp.raise_for_status()
    return resp.json()
