import os
from dataclasses import dataclass
from dotenv import load_dotenv
from ..utils.logger import setup_logger

logger = setup_logger('cmschat.config')

DEV_SECRET = "dev-secret"


@dataclass
class Settings:
    """Server settings read from the environment.

    Attributes:
        host (str): Interface to bind
        port (int): Port to listen on
        data_dir (str): Directory holding the JSONL data files
        jwt_secret (str): HS256 secret used to verify bearer tokens
        queue_size (int): Capacity of each live connection's event queue
    """
    host: str = "127.0.0.1"
    port: int = 50051
    data_dir: str = "cmschat/data"
    jwt_secret: str = DEV_SECRET
    queue_size: int = 256

    @property
    def conversations_path(self) -> str:
        return os.path.join(self.data_dir, "conversations.jsonl")

    @property
    def messages_path(self) -> str:
        return os.path.join(self.data_dir, "messages.jsonl")


def load_settings() -> Settings:
    """Build settings from ``CMSCHAT_*`` variables, loading ``.env`` first."""
    load_dotenv()
    secret = os.environ.get("CMSCHAT_JWT_SECRET")
    if not secret:
        logger.warning("CMSCHAT_JWT_SECRET is not set, using the development secret")
        secret = DEV_SECRET
    return Settings(
        host=os.environ.get("CMSCHAT_HOST", "127.0.0.1"),
        port=int(os.environ.get("CMSCHAT_PORT", "50051")),
        data_dir=os.environ.get("CMSCHAT_DATA_DIR", "cmschat/data"),
        jwt_secret=secret,
        queue_size=int(os.environ.get("CMSCHAT_QUEUE_SIZE", "256")),
    )
