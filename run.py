import sys
import signal
import logging

from bridge.config import settings
from bridge.main import app

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

def handle_exit(signum, frame):
    logger.info("Получен сигнал завершения работы")
    sys.exit(0)

if __name__ == "__main__":
    import uvicorn

    # Регистрируем обработчики сигналов
    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower(),
        use_colors=True,
        loop="asyncio"
    )
