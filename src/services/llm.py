import time
import asyncio
import logging
from typing import Any, List, Optional, Protocol, Sequence

from langchain_ollama import ChatOllama
from langchain_core.messages import HumanMessage
import httpx

from core.entities import Item

logger = logging.getLogger(__name__)

PROMPT_KEY_CLUSTER_TOPIC = "cluster_topic"
PROMPT_DEFAULT_VERSION = "v1"
PROMPT_LANG_PLACEHOLDER = "{{LANG_INSTRUCTION}}"
PROMPT_COUNT_PLACEHOLDER = "{{MESSAGE_COUNT}}"

DEFAULT_CLUSTER_TOPIC_PROMPT = """You are an expert news editor. Based on the following {{MESSAGE_COUNT}} related summaries, generate a very short topic label (around 2-4 words) that encapsulates the main theme of these stories. It should read like a brief headline or category, with no ending punctuation.{{LANG_INSTRUCTION}}

Summaries:
"""


class PromptStore(Protocol):
    async def get_setting(self, key: str) -> Any:
        ...


def prompt_active_key(base_key: str) -> str:
    return f"prompt:{base_key}:active"


def prompt_version_key(base_key: str, version: str) -> str:
    return f"prompt:{base_key}:{version}"


def apply_prompt_tokens(prompt: str, lang_instruction: str, count: int) -> str:
    with_count = prompt.replace(PROMPT_COUNT_PLACEHOLDER, str(count))
    if PROMPT_LANG_PLACEHOLDER in with_count:
        return with_count.replace(PROMPT_LANG_PLACEHOLDER, lang_instruction)
    return with_count + lang_instruction


def build_cluster_topic_prompt(template: str, items: Sequence[Item], language: str) -> str:
    lang_instruction = ""
    if language:
        lang_instruction = f" IMPORTANT: Write the topic in {language} language."

    lines = [apply_prompt_tokens(template, lang_instruction, len(items))]
    for i, item in enumerate(items, start=1):
        lines.append(f"[{i}] {item.summary}\n")
    return "".join(lines)


def clean_topic_label(content: str) -> str:
    """First non-empty line without quotes or trailing punctuation."""
    for line in content.strip().splitlines():
        line = line.strip().strip('"\'*`').strip()
        if line:
            return line.rstrip(".!;:")
    return ""


class OllamaClient:
    """
    LangChain-based Ollama client with retry logic and proper connection handling.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.1,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
        prompt_store: Optional[PromptStore] = None,
    ):
        # ChatOllama uses Ollama's native API, not OpenAI-compatible /v1 endpoint
        if base_url.endswith("/v1"):
            base_url = base_url[:-3]
        elif base_url.endswith("/v1/"):
            base_url = base_url[:-4]

        self.base_url = base_url.rstrip('/')
        self.model = model
        self.temperature = temperature
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.prompt_store = prompt_store

        self.llm = self._chat_model(model)

    def _chat_model(self, model: str) -> ChatOllama:
        return ChatOllama(
            base_url=self.base_url,
            model=model,
            temperature=self.temperature,
            num_ctx=4096,
        )

    async def _invoke_with_retry(self, messages: List[HumanMessage], llm: Optional[ChatOllama] = None) -> Any:
        """
        Invoke LLM with retry logic for connection failures.
        """
        llm = llm or self.llm
        last_exception = None

        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.wait_for(
                    llm.ainvoke(messages),
                    timeout=self.timeout,
                )

            except asyncio.TimeoutError:
                last_exception = TimeoutError(
                    f"Request timed out after {self.timeout}s"
                )
                logger.warning(
                    f"Attempt {attempt}/{self.max_retries}: Timeout, retrying..."
                )

            except Exception as e:
                last_exception = e
                error_msg = str(e)

                if "connection" in error_msg.lower() or "connect" in error_msg.lower():
                    logger.warning(
                        f"Attempt {attempt}/{self.max_retries}: Connection error - {error_msg} (base_url={self.base_url}, model={self.model})"
                    )
                else:
                    # For non-connection errors, don't retry
                    raise

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        raise last_exception or Exception("All connection attempts failed")

    async def _load_prompt(self, base_key: str, fallback: str) -> str:
        """Prompt override from settings: the active version name, then its text."""
        if self.prompt_store is None:
            return fallback

        version = PROMPT_DEFAULT_VERSION
        try:
            active = await self.prompt_store.get_setting(prompt_active_key(base_key))
            if isinstance(active, str) and active.strip():
                version = active.strip()

            override = await self.prompt_store.get_setting(prompt_version_key(base_key, version))
            if isinstance(override, str) and override.strip():
                return override
        except Exception as e:
            logger.debug(f"Prompt override lookup failed for {base_key}: {e}")

        return fallback

    async def generate_cluster_topic(
        self,
        items: Sequence[Item],
        language: str = "",
        model: str = "",
    ) -> str:
        """
        Short topic label for a group of related items. Empty string for no items.
        """
        if not items:
            return ""

        template = await self._load_prompt(PROMPT_KEY_CLUSTER_TOPIC, DEFAULT_CLUSTER_TOPIC_PROMPT)
        prompt = build_cluster_topic_prompt(template, items, language)

        llm = self._chat_model(model) if model and model != self.model else self.llm

        start = time.time()
        response = await self._invoke_with_retry([HumanMessage(content=prompt)], llm=llm)
        latency_ms = int((time.time() - start) * 1000)

        topic = clean_topic_label(str(response.content))
        logger.debug(f"Cluster topic generated in {latency_ms}ms: {topic}")
        return topic

    async def health_check(self) -> bool:
        """
        Check if the Ollama server is reachable by calling /api/tags.
        """
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(url)
                if resp.status_code == 200:
                    return True
                logger.error(f"Ollama health check failed: {resp.status_code} {resp.text}")
                return False
        except Exception as e:
            logger.error(f"Ollama health check error: {e} (url={url})")
            return False
