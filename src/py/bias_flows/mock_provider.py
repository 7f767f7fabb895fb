"""
Bias Flows — Mock Completion Provider

Simulates a completion provider with scripted behavior:
- Scripted completions returned in order
- Exceptions raised on chosen calls
- HANG steps that never resolve (for timeout tests)
- Configurable latency

Records every request it receives. No API keys needed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Union

from .types import LLMRequest, LLMResponse

# Script step that never resolves until release() is called.
HANG = object()

Step = Union[str, BaseException, object]


@dataclass
class MockProviderConfig:
    """Configuration for the mock completion provider."""

    # Simulated response latency in milliseconds.
    latency_ms: float = 0

    # Steps consumed one per call. Strings are returned, exceptions raised.
    script: list[Step] = field(default_factory=list)

    # Returned once the script runs out.
    default_response: Step = "{}"

    model_name: str = "mock-bias"


class MockProvider:
    """Mock completion provider for tests and local runs."""

    def __init__(self, config: MockProviderConfig | None = None) -> None:
        self._config = config or MockProviderConfig()
        self._requests: list[LLMRequest] = []
        self._release = asyncio.Event()

    @classmethod
    def scripted(cls, *steps: Step, default: Step | None = None) -> MockProvider:
        config = MockProviderConfig(script=list(steps))
        if default is not None:
            config.default_response = default
        return cls(config)

    async def call(self, request: LLMRequest) -> LLMResponse:
        index = len(self._requests)
        self._requests.append(request)

        if self._config.latency_ms > 0:
            await asyncio.sleep(self._config.latency_ms / 1000)

        script = self._config.script
        step = script[index] if index < len(script) else self._config.default_response

        if step is HANG:
            await self._release.wait()
            raise RuntimeError("hung call released")
        if isinstance(step, BaseException):
            raise step
        return LLMResponse(message=str(step), model=self._config.model_name, finish_reason="stop")

    __call__ = call

    def release(self) -> None:
        """Wake every HANG step so abandoned calls can finish."""
        self._release.set()

    @property
    def requests(self) -> list[LLMRequest]:
        return list(self._requests)

    @property
    def prompts(self) -> list[str]:
        return [r.prompt for r in self._requests]

    @property
    def call_count(self) -> int:
        """Total calls made to this provider instance."""
        return len(self._requests)

    def reset(self) -> None:
        self._requests.clear()
        self._release = asyncio.Event()
