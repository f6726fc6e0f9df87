"""Run the server: `python -m kaliun` or `kaliun-server`."""

from kaliun.config import settings


def main() -> None:
    import uvicorn

    uvicorn.run("kaliun.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    main()
