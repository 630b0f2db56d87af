#!/usr/bin/env python3
"""
Static file responses with conditional-request support.
"""

import email.utils
import logging

import aiofiles.os
from fastapi import HTTPException, Request
from fastapi.responses import FileResponse, Response

logger = logging.getLogger(__name__)

CACHE_CONTROL = "no-cache"


def parse_entity_tags(header: str) -> list:
    """Entity tags of an If-None-Match header with any weak ``W/`` prefix removed"""
    tags = []
    for tag in header.split(","):
        tag = tag.strip()
        if tag.startswith("W/"):
            tag = tag[2:]
        tags.append(tag)
    return tags


def is_not_modified(request: Request, etag: str, last_modified: str) -> bool:
    """Evaluate If-None-Match / If-Modified-Since against a file's validators"""
    if_none_match = request.headers.get("if-none-match")
    if if_none_match is not None:
        tags = parse_entity_tags(if_none_match)
        return "*" in tags or etag in tags

    if_modified_since = request.headers.get("if-modified-since")
    if if_modified_since:
        try:
            since = email.utils.parsedate_to_datetime(if_modified_since)
            modified = email.utils.parsedate_to_datetime(last_modified)
        except (TypeError, ValueError):
            return False
        return modified <= since

    return False


async def serve_static_file(request: Request, file_path: str) -> Response:
    """
    Serve a regular file's bytes unchanged.

    Content type is inferred from the extension; Range requests are handled
    by FileResponse. Raises 404 if the file vanished since it was resolved.
    """
    try:
        st = await aiofiles.os.stat(file_path)
    except OSError as e:
        logger.error(f"File disappeared before it could be served: {file_path}: {e}")
        raise HTTPException(status_code=404, detail="Not Found")

    response = FileResponse(path=file_path, stat_result=st, headers={"Cache-Control": CACHE_CONTROL})

    if is_not_modified(request, response.headers["etag"], response.headers["last-modified"]):
        logger.info(f"Not modified: {file_path}")
        headers = {
            key: response.headers[key]
            for key in ("etag", "last-modified", "cache-control")
            if key in response.headers
        }
        return Response(status_code=304, headers=headers)

    logger.info(f"Serving file: {file_path}")
    return response
