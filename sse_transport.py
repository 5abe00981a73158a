"""
MCP over Server-Sent Events

GET /sse opens the event stream: the first event (`endpoint`) tells the client
where to POST, and every server -> client JSON-RPC message follows as a
`message` event. POST /messages?sessionId=<id> feeds client -> server messages
into the MCP server running for that connection.
"""

import logging
from typing import Optional
from uuid import uuid4

import anyio
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from mcp import types
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from session_registry import SessionRegistry

logger = logging.getLogger("contextdb.sse")

PING_INTERVAL_SECONDS = 15


class SseTransport:
    """Runs one MCP server session per open SSE connection."""

    def __init__(self, server, registry: SessionRegistry, messages_path: str = "/messages"):
        self.server = server
        self.registry = registry
        self.messages_path = messages_path

    def endpoint_for(self, session_id: str) -> str:
        return f"{self.messages_path}?sessionId={session_id}"

    async def handle_sse(self, scope, receive, send):
        """ASGI app for GET /sse (expects the auth gate in front of it)."""
        session_id = uuid4().hex
        read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

        user_id: Optional[str] = scope.get("state", {}).get("user_id")
        self.registry.register(session_id, read_stream_writer, user_id)
        logger.info(f"SSE session {session_id} opened (user {user_id})")

        async def event_stream():
            yield {"event": "endpoint", "data": self.endpoint_for(session_id)}
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    yield {
                        "event": "message",
                        "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                    }

        try:
            async with anyio.create_task_group() as tg:

                async def stream_response():
                    response = EventSourceResponse(event_stream(), ping=PING_INTERVAL_SECONDS)
                    await response(scope, receive, send)
                    # Client went away
                    tg.cancel_scope.cancel()

                tg.start_soon(stream_response)
                await self.server.run(
                    read_stream,
                    write_stream,
                    self.server.create_initialization_options(),
                )
                tg.cancel_scope.cancel()
        finally:
            self.registry.remove(session_id)
            read_stream_writer.close()
            write_stream.close()
            logger.info(f"SSE session {session_id} closed")

    async def handle_post_message(self, request: Request) -> Response:
        """POST /messages?sessionId=<id>"""
        session_id = request.query_params.get("sessionId")
        if not session_id:
            return JSONResponse({"error": "Missing sessionId"}, status_code=400)

        session = self.registry.get(session_id)
        if session is None:
            return JSONResponse({"error": "Session not found"}, status_code=404)

        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as e:
            logger.warning(f"Unparsable message for session {session_id}: {e}")
            return JSONResponse({"error": "Could not parse message"}, status_code=400)

        # Tool handlers read the caller from the request they were dispatched with
        request.state.user_id = session.user_id

        try:
            await session.channel.send(
                SessionMessage(message, metadata=ServerMessageMetadata(request_context=request))
            )
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            self.registry.remove(session_id)
            return JSONResponse({"error": "Session not found"}, status_code=404)

        return Response("Accepted", status_code=202)
