import os
import logging

from dotenv import load_dotenv
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict
from agents import (
    set_default_openai_api,
    set_default_openai_client,
    set_tracing_disabled,
)

current_dir = os.path.dirname(os.path.abspath(__file__))
root_dir = os.path.dirname(current_dir)
# Load env from the project root first, then the package dir, without overriding
load_dotenv(os.path.join(root_dir, ".env"), override=False)
load_dotenv(os.path.join(current_dir, ".env"), override=False)


logger = logging.getLogger("fragment_agent.config")

DEFAULT_GATEWAY_BASE_URL = "https://ai-gateway.vercel.sh/v1"


class Settings(BaseModel):
    """Runtime settings for the fragment agent.

    Attributes:
        model: Model used by the coding agent turns.
        summary_model: Model used for title and response derivation.
        temperature: Sampling temperature for the coding agent.
        sandbox_template: Sandbox runtime image requested on acquire.
        sandbox_timeout_ms: Lifetime of a sandbox before the provider reclaims it.
        preview_port: Port the generated app listens on inside the sandbox.
        max_iterations: Hard cap on agent turns per run.
        history_limit: Number of recent conversation messages fed to the agent.
        ledger_backend: One of "memory", "sqlite" or "cache".
        ledger_path: SQLite file used when ledger_backend is "sqlite".
        run_store_namespace: Runtime cache namespace for messages and steps.
        run_store_ttl_seconds: TTL for runtime cache entries.
    """

    model_config = ConfigDict(frozen=True)

    model: str = "gpt-4.1"
    summary_model: str = "gpt-4o-mini"
    temperature: float = 0.1
    sandbox_template: str = "node22"
    sandbox_timeout_ms: int = 600_000
    preview_port: int = 3000
    max_iterations: int = 15
    history_limit: int = 5
    ledger_backend: str = "memory"
    ledger_path: str = "fragment-ledger.sqlite3"
    run_store_namespace: str = "fragment-agent-runs"
    run_store_ttl_seconds: int = 86_400

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            model=os.getenv("FRAGMENT_MODEL", "gpt-4.1"),
            summary_model=os.getenv("FRAGMENT_SUMMARY_MODEL", "gpt-4o-mini"),
            temperature=float(os.getenv("FRAGMENT_TEMPERATURE", "0.1")),
            sandbox_template=os.getenv("SANDBOX_TEMPLATE", "node22"),
            sandbox_timeout_ms=int(os.getenv("SANDBOX_TIMEOUT_MS", "600000")),
            preview_port=int(os.getenv("PREVIEW_PORT", "3000")),
            max_iterations=int(os.getenv("MAX_ITERATIONS", "15")),
            history_limit=int(os.getenv("HISTORY_LIMIT", "5")),
            ledger_backend=os.getenv("LEDGER_BACKEND", "memory").strip().lower(),
            ledger_path=os.getenv("LEDGER_PATH", "fragment-ledger.sqlite3"),
            run_store_namespace=os.getenv("RUN_STORE_NAMESPACE", "fragment-agent-runs"),
            run_store_ttl_seconds=int(os.getenv("RUN_STORE_TTL_SECONDS", "86400")),
        )


def make_openai_client() -> AsyncOpenAI:
    """Build the OpenAI client for the AI Gateway or the OpenAI API.

    Either AI_GATEWAY_API_KEY / VERCEL_OIDC_TOKEN (gateway) or OPENAI_API_KEY
    must be set. OPENAI_BASE_URL overrides the endpoint for plain OpenAI use.
    """
    gateway_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("VERCEL_OIDC_TOKEN")
    if gateway_key:
        return AsyncOpenAI(
            api_key=gateway_key,
            base_url=os.getenv("AI_GATEWAY_BASE_URL") or DEFAULT_GATEWAY_BASE_URL,
        )
    return AsyncOpenAI(
        api_key=os.getenv("OPENAI_API_KEY"),
        base_url=os.getenv("OPENAI_BASE_URL") or None,
    )


def configure_openai(client: AsyncOpenAI | None = None) -> AsyncOpenAI:
    """Register the client with the agents SDK and return it."""
    client = client or make_openai_client()
    set_default_openai_client(client, use_for_tracing=False)
    set_default_openai_api("chat_completions")
    set_tracing_disabled(True)
    logger.info("openai client configured base_url=%s", client.base_url)
    return client
