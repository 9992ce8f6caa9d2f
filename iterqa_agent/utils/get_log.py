import logging
import os
from datetime import datetime
from logging import WARNING, FileHandler
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(filename)s (%(funcName)s:%(lineno)d)] - %(message)s"


class GetLog:
    logger = None
    log_folder = None

    @classmethod
    def get_log(cls, level: str = "info", log_folder: str = None):
        """Get the root logger, configuring it on first use.

        Args:
            level (str): Level for the main log file and the console, default "info"
            log_folder (str): Folder for log files; defaults to ./logs/<timestamp>
        """
        if cls.logger is None:
            if log_folder:
                cls.log_folder = log_folder
            else:
                current_time = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
                cls.log_folder = os.path.join("./logs", current_time)
                # Reports reuse this timestamp for their folder name
                os.environ["ITERQA_TIMESTAMP"] = current_time

            os.makedirs(cls.log_folder, exist_ok=True)

            numeric_level = getattr(logging, str(level).upper(), logging.INFO)
            cls.logger = logging.getLogger()
            cls.logger.setLevel(numeric_level)
            fm = logging.Formatter(LOG_FORMAT)

            # Main log file, rotated at midnight
            th = TimedRotatingFileHandler(
                filename=os.path.join(cls.log_folder, "log.log"),
                when="midnight",
                interval=1,
                backupCount=3,
                encoding="utf-8",
            )
            th.setLevel(numeric_level)
            th.setFormatter(fm)
            cls.logger.addHandler(th)

            # Warnings and errors only
            error_handler = FileHandler(filename=os.path.join(cls.log_folder, "error.log"), encoding="utf-8")
            error_handler.setLevel(WARNING)
            error_handler.setFormatter(fm)
            cls.logger.addHandler(error_handler)

            console_handler = logging.StreamHandler()
            console_handler.setLevel(numeric_level)
            console_handler.setFormatter(fm)
            cls.logger.addHandler(console_handler)

        return cls.logger
