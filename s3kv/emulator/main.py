import logging
import os

import anyio
import uvicorn

from s3kv.emulator.api import Config, make_app
from s3kv.emulator.storage.memory import InMemoryBackend


async def main() -> None:
    logging.basicConfig(level=os.environ.get("S3KV_LOG_LEVEL", "INFO"))
    host = os.environ.get("S3KV_EMULATOR_HOST", "127.0.0.1")
    port = int(os.environ.get("S3KV_EMULATOR_PORT", "8000"))
    credentials = None
    access_key = os.environ.get("S3KV_EMULATOR_ACCESS_KEY")
    if access_key:
        credentials = {access_key: os.environ["S3KV_EMULATOR_SECRET_KEY"]}
    # TO TEST: set auto_create=False to require an explicit create_bucket()
    fs = InMemoryBackend(auto_create=True)
    app = make_app(fs, Config(host=host, credentials=credentials))

    config = uvicorn.Config(app, host=host, port=port)
    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    anyio.run(main)
