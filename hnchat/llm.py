import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from .errors import LLMProviderError
from .schemas import ToolDescriptor


SYSTEM_PROMPT = (
    "You are the planning and synthesis engine of a Hacker News research assistant. "
    "You answer questions by calling the tools listed below and summarizing their results."
)


def _tool_lines(tools: Optional[List[ToolDescriptor]]) -> str:
    if not tools:
        return "No tools available."
    return "\n".join(tool.summary_line() for tool in tools)


class LLMProvider:
    """Prompt in, text out."""

    async def generate(self, prompt: str, tools: Optional[List[ToolDescriptor]] = None) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ChatCompletionsProvider(LLMProvider):
    """LLMProvider backed by an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = httpx.AsyncClient(timeout=timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    def build_messages(self, prompt: str, tools: Optional[List[ToolDescriptor]]) -> List[Dict[str, Any]]:
        system = f"{SYSTEM_PROMPT}\n\nAvailable tools:\n{_tool_lines(tools)}"
        return [{"role": "system", "content": system}, {"role": "user", "content": prompt}]

    async def chat_completion(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise asyncio.TimeoutError(f"LLM request timed out: {url}") from exc
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise LLMProviderError(f"LLM request failed with HTTP {exc.response.status_code}: {detail}") from exc
        except httpx.HTTPError as exc:
            raise LLMProviderError(f"LLM request failed: {exc}") from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise LLMProviderError("LLM returned a non-JSON response") from exc

    async def generate(self, prompt: str, tools: Optional[List[ToolDescriptor]] = None) -> str:
        data = await self.chat_completion(self.build_messages(prompt, tools))
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMProviderError("LLM response missing choices[0].message.content") from exc
        if not isinstance(content, str) or not content.strip():
            raise LLMProviderError("LLM returned an empty response")
        return content

    async def close(self) -> None:
        await self.client.aclose()
