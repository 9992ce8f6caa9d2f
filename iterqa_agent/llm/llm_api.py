import json
import logging
from typing import Any, Dict, Optional

import httpx
from openai import AsyncOpenAI


class LLMAPI:
    def __init__(self, llm_config: Dict[str, Any]) -> None:
        self.llm_config = llm_config
        self.api_type = self.llm_config.get("api", "openai")
        self.model = self.llm_config.get("model")
        self.client: Optional[AsyncOpenAI] = None
        self._client: Optional[httpx.AsyncClient] = None  # httpx client

    async def initialize(self):
        if self.api_type != "openai":
            raise ValueError("Invalid API type or missing credentials. LLM client not initialized.")
        self.api_key = self.llm_config.get("api_key")
        if not self.api_key:
            raise ValueError("API key is empty. OpenAI client not initialized.")
        self.base_url = self.llm_config.get("base_url")
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url or None,
            http_client=await self._get_client(),
        )
        logging.info(f"AsyncOpenAI client initialized. Model: {self.model}, base URL: {self.base_url}")
        return self

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.llm_config.get("timeout", 60.0))
        return self._client

    async def get_llm_response(self, system_prompt: str, prompt: str) -> str:
        if self.client is None:
            await self.initialize()
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.llm_config.get("temperature", 0.0),
            )
        except Exception as e:
            logging.error(f"Error while calling OpenAI API: {e}")
            raise
        return self._clean_response(completion.choices[0].message.content)

    async def get_json_response(self, system_prompt: str, prompt: str) -> Any:
        """Ask for a JSON answer and parse it; raises ValueError on invalid JSON."""
        content = await self.get_llm_response(system_prompt, prompt)
        try:
            return json.loads(content)
        except (TypeError, json.JSONDecodeError) as e:
            logging.error(f"LLM returned invalid JSON: {str(content)[:500]}")
            raise ValueError(f"LLM returned invalid JSON: {e}") from e

    def _clean_response(self, response: Optional[str]) -> str:
        """Remove markdown code fences around a JSON answer."""
        if not response:
            return ""
        text = response.strip()
        if text.startswith("```json") and text.endswith("```"):
            logging.debug("Cleaning response: removing ```json``` markers")
            return text[7:-3].strip()
        if text.startswith("```") and text.endswith("```"):
            logging.debug("Cleaning response: removing ``` markers")
            return text[3:-3].strip()
        return text

    async def close(self):
        if self.client is not None:
            await self.client.close()
            self.client = None
        if self._client:
            await self._client.aclose()
            self._client = None
