import argparse
from dotenv import load_dotenv

load_dotenv(override=True)

from guardian.config import load_config, parse_frontend
from guardian.core import run_guardian


def parse_args(argv=None, config=None):
    config = config or load_config()
    p = argparse.ArgumentParser(
        prog="elastic-guardian",
        description="Basic-Auth and per-user ACL gatekeeper in front of an HTTP backend.",
    )
    p.add_argument("--backend", default=config.backend_url,
                   help="Backend URL (where to proxy requests to)")
    p.add_argument("--frontend", default=f"{config.listen_host}:{config.listen_port}",
                   help="host:port to expose the proxied backend on")
    p.add_argument("--realm", default=config.realm, help="HTTP Basic Auth realm")
    p.add_argument("--logpath", default=config.log_path,
                   help="Path to the JSON-lines logfile (rotated daily), or 'stdout'")
    p.add_argument("--cpath", default=config.credentials_path,
                   help="Path to the credentials file")
    p.add_argument("--apath", default=config.authorizations_path,
                   help="Path to the authorizations file")
    args = p.parse_args(argv)

    config.backend_url = args.backend
    config.listen_host, config.listen_port = parse_frontend(args.frontend, config.listen_host)
    config.realm = args.realm
    config.log_path = args.logpath
    config.credentials_path = args.cpath
    config.authorizations_path = args.apath
    return config


def main():
    config = parse_args()
    run_guardian(config)

if __name__ == "__main__":
    main()
