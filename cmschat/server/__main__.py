import asyncio
from .main import serve

asyncio.run(serve())
