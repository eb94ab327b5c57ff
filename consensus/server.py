"""FastAPI HTTP surface for the provider gateway."""

import json
import logging
from contextlib import aclosing

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from config.config_loader import AppConfig
from consensus.gateway import ChatRequest, Gateway
from consensus.providers.base import ProviderError
from consensus.targets import parse_model_target

logger = logging.getLogger(__name__)


class ChatBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    model: str = ""
    messages: list[dict] = Field(default_factory=list)
    stream: bool = False
    client_api_key: str | None = Field(default=None, alias="clientApiKey")
    native_web_search: bool = Field(default=False, alias="nativeWebSearch")


def _as_int(value: str | None) -> int | None:
    """Lenient query-string integer; junk reads as unset."""
    try:
        return int(float(value)) if value not in (None, "") else None
    except (ValueError, OverflowError):
        return None


def sse_line(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def create_app(config: AppConfig, gateway: Gateway | None = None) -> FastAPI:
    """Create the FastAPI application."""

    app = FastAPI(
        title="Consensus Gateway",
        description="Normalized chat gateway over OpenRouter, Anthropic, OpenAI and Gemini",
        version="0.1.0",
    )
    gw = gateway if gateway is not None else Gateway(config)

    @app.post("/chat")
    async def chat(body: ChatBody, x_openrouter_api_key: str | None = Header(default=None)):
        """Run one chat request; streams SSE when ``stream`` is true.

        The aggregator key may come in the body or the ``X-OpenRouter-API-Key``
        header; the body wins.
        """
        request = ChatRequest(
            model=body.model,
            messages=body.messages,
            stream=body.stream,
            client_api_key=body.client_api_key or x_openrouter_api_key,
            native_web_search=body.native_web_search,
        )

        if request.stream:
            async def events():
                # Starlette cancels this generator when the client disconnects,
                # which closes the upstream stream through aclosing().
                async with aclosing(gw.stream(request)) as stream:
                    async for event in stream:
                        yield sse_line(event.to_payload())

            return StreamingResponse(
                events(),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
            )

        try:
            result = await gw.complete(request)
        except ProviderError as exc:
            target = parse_model_target(request.model)
            logger.warning("/chat failed for %s: %s", request.model, exc)
            status = exc.status if exc.status and exc.status >= 400 else 502
            return JSONResponse(
                status_code=status,
                content={"error": exc.message, "provider": target.provider, "model": target.model, "kind": exc.kind},
            )
        return result.to_payload()

    @app.get("/models")
    async def models(x_openrouter_api_key: str | None = Header(default=None)):
        try:
            data = await gw.list_models(x_openrouter_api_key)
        except ProviderError as exc:
            return JSONResponse(status_code=502, content={"error": exc.message})
        return {"data": data}

    @app.get("/models/search")
    async def models_search(
        q: str = "",
        provider: str = "",
        limit: str | None = None,
        offset: str | None = None,
        x_openrouter_api_key: str | None = Header(default=None),
    ):
        try:
            data, total = await gw.search_models(
                query=q, provider=provider, limit=_as_int(limit), offset=_as_int(offset), client_api_key=x_openrouter_api_key
            )
        except ProviderError as exc:
            return JSONResponse(status_code=502, content={"error": exc.message})
        return {"data": data, "total": total}

    @app.get("/providers")
    async def providers():
        return gw.providers_status()

    @app.get("/health")
    async def health():
        return {"ok": True, "providers": gw.providers_status()}

    return app
