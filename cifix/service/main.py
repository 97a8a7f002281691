from __future__ import annotations

import uvicorn

from cifix.service.app import create_app
from cifix.settings import Settings


def main() -> None:
    s = Settings()
    uvicorn.run(create_app(s), host=s.host, port=int(s.port))


if __name__ == "__main__":
    main()
