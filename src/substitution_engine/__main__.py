from __future__ import annotations

import argparse

from .app import create_rules_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the substitution rules service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--no-base-rules", action="store_true", help="start without the base rule bundle")
    parser.add_argument("--no-custom-rules", action="store_true", help="start without the custom rule bundle")
    args = parser.parse_args()

    app = create_rules_app(
        base_rules=False if args.no_base_rules else None,
        custom_rules=False if args.no_custom_rules else None,
    )
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
