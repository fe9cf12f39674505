from __future__ import annotations

import os

from itam.infra.auth import create_platform_token


def main() -> None:
    operator = os.getenv("PLATFORM_OPERATOR", "ops")
    expires_raw = os.getenv("PLATFORM_TOKEN_EXPIRES_MIN")
    print(create_platform_token(operator, int(expires_raw) if expires_raw else None))


if __name__ == "__main__":
    main()
