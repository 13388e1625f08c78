"""Minimal demonstration of streaming a completion."""

import asyncio

from completion_core import CompletionRequest
from completion_core.domain.models import unit_text
from completion_core.api.service import get_default_engine


async def main() -> None:
    request = CompletionRequest.from_prompt("用一句话介绍一下 Python", model_id="openai/gpt3.5")
    async for unit in get_default_engine().stream(request, origin="demo"):
        print(unit_text(unit), end="", flush=True)
    print()


if __name__ == "__main__":
    asyncio.run(main())
