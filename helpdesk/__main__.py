import uvicorn

from . import config


def main() -> None:
    uvicorn.run("helpdesk.main:app", host="0.0.0.0", port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
