from dataclasses import dataclass
import os
from dotenv import find_dotenv, load_dotenv

@dataclass
class Config:
    backend_url: str
    listen_host: str
    listen_port: int
    realm: str
    credentials_path: str
    authorizations_path: str
    log_path: str

def load_config():
    load_dotenv(find_dotenv(usecwd=True), override=True)
    return Config(
        backend_url=os.getenv("GUARDIAN_BACKEND_URL", "http://localhost:9200"),
        listen_host=os.getenv("GUARDIAN_LISTEN_HOST", "0.0.0.0"),
        listen_port=int(os.getenv("GUARDIAN_LISTEN_PORT", 9600)),
        realm=os.getenv("GUARDIAN_REALM", "Elasticsearch"),
        credentials_path=os.getenv("GUARDIAN_CREDENTIALS_PATH", ""),
        authorizations_path=os.getenv("GUARDIAN_AUTHORIZATIONS_PATH", ""),
        log_path=os.getenv("GUARDIAN_LOG_PATH", "stdout"),
    )

def parse_frontend(value: str, default_host: str = "0.0.0.0"):
    """Split a ``host:port`` bind address; ``:9600`` binds all interfaces."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"frontend must be host:port, got {value!r}")
    return (host or default_host), int(port)
