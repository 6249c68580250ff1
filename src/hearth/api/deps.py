"""Shared route dependencies."""

from fastapi import Request

from hearth.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
