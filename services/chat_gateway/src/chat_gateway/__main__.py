import logging

import uvicorn

from chat_gateway.main import app, settings
from shared.constants import CHAT_COMPLETIONS_PATH

logger = logging.getLogger("chat_gateway")


def main() -> None:
    logger.info(
        "Access the API server at: http://%s:%s%s", settings.host, settings.port, CHAT_COMPLETIONS_PATH
    )
    logger.info(
        "proxy=%s authorization=%s prompt_mode=%s solver_workers=%s",
        "set" if settings.all_proxy else "unset",
        "set" if settings.authorization else "unset",
        settings.prompt_mode,
        settings.solver_workers,
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
