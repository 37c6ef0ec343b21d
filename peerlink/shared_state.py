import asyncio

# Application State
shutdown_event = asyncio.Event()
