"""External surfaces of the engine.

Surfaces only translate requests into engine calls and engine Results into
responses; transition logic stays in ``engine``.

Usage:
    ```python
    from interface import EngineWebAPI

    api = EngineWebAPI(PipelineEngine(db), port=8080)
    await api.startup()
    ```
"""
from interface.web.api import EngineWebAPI, SessionAuthenticator, TokenAuthenticator

__all__ = [
    "EngineWebAPI",
    "SessionAuthenticator",
    "TokenAuthenticator",
]
