"""Story Agents — launcher. Serves the API with uvicorn."""

import argparse
import logging
from pathlib import Path

import uvicorn

from story_agents.config import load_settings


def main():
    settings = load_settings()

    parser = argparse.ArgumentParser(description="Story Agents server")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: DATA_DIR or ./data)")
    parser.add_argument("--demo", action="store_true",
                        help="Clean agents and create the demo story")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": args.data_dir.resolve()})

    if args.demo:
        from story_agents.demo import create_demo_data
        from story_agents.storage import Storage
        story = create_demo_data(Storage(settings.data_dir))
        print(f"Demo story '{story.title}' written to {settings.data_dir}")

    from story_agents.app import create_app
    print(f"Starting server on http://{args.host}:{args.port} ...")
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
