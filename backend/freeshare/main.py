"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from freeshare.api import ops
from freeshare.api.errors import install_error_handlers
from freeshare.api.middleware_request_id import RequestIdMiddleware
from freeshare.infra import postgres
from freeshare.moderation.api import router as moderation_router
from freeshare.obs import init as obs_init
from freeshare.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="freeshare moderation", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_origins())
if not allow_origins and settings.is_dev():
	allow_origins = [
		"http://localhost:3000",
		"http://127.0.0.1:3000",
		"http://localhost:5173",
		"http://127.0.0.1:5173",
	]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

obs_init(app)

# Every request carries an X-Request-Id available on request.state.
app.add_middleware(RequestIdMiddleware)

app.include_router(ops.router, tags=["ops"])
app.include_router(moderation_router)
