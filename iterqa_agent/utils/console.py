import asyncio
import logging


async def prompt_user(prompt: str = "Select an option: ") -> str:
    """Read one line from stdin without blocking the event loop.

    End of input is treated as the exit selection.
    """
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        logging.info("stdin closed; treating as exit")
        return "0"
