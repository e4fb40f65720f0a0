# run_server.py
import uvicorn

from camwatch.config import settings


def main() -> None:
    uvicorn.run(
        "camwatch.main:app",
        host=settings.HOST,
        port=int(settings.PORT),
        log_level=(settings.LOG_LEVEL or "info").lower(),
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
