from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from open_agent_proxy.common.config import logger, MODEL_MAP
from open_agent_proxy.common.credentials import load_credentials
from open_agent_proxy.common.agent_client import set_agent_credentials, shutdown_agent_clients
from open_agent_proxy.chat_completions_service import handle_chat_completions
from open_agent_proxy.models.chat_models import ModelCard, ModelList

app = FastAPI(
    title="Open Agent Proxy",
    description="A proxy server that exposes an ACP agent through the OpenAI chat completions API.",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    """Application startup event handler."""
    set_agent_credentials(load_credentials())
    logger.info("API Controller startup complete.")

@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event handler."""
    await shutdown_agent_clients()
    logger.info("API Controller shutdown complete.")


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    """
    Endpoint for /v1/chat/completions, delegating to the service.
    """
    logger.info("Handling chat completions")
    return await handle_chat_completions(request)


@app.get("/v1/models")
async def list_models():
    return ModelList(data=[ModelCard(id=model_id) for model_id in MODEL_MAP]).model_dump()


@app.get("/health")
async def health_check():
    return {"status": "ok", "adapter": "running"}

@app.get("/")
async def root():
    return {"message": "Open Agent Proxy is running."}
