import json, logging.config, pathlib, copy
from functools import lru_cache

_DEFAULT = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s [%(levelname)s] %(name)s - %(message)s"},
        "brief": {"format": "[%(levelname)s] %(message)s"},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
            "level": "INFO",
        },
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": "arowss.log",
            "maxBytes": 500_000,
            "backupCount": 5,
            "formatter": "plain",
            "level": "DEBUG",
        },
    },
    "root": {"handlers": ["console", "file"], "level": "DEBUG"},
}

@lru_cache(maxsize=1)
def setup_logging(cfg_path: str | None = "log_config.json",
                  *,                                   # force kw-only overrides
                  logfile: str | None = None,
                  console_level: str | None = None,
                  to_file: bool = True):
    """Configure logging once per process.

    - If *cfg_path* exists, merge it over the defaults.
    - *logfile* redirects the rotating file handler; its directory is created.
    - *to_file=False* keeps output on the console only (operator queries
      should not rotate the flight log).
    """
    config = copy.deepcopy(_DEFAULT)
    if cfg_path and pathlib.Path(cfg_path).exists():
        user = json.loads(pathlib.Path(cfg_path).read_text())
        config.update(user)

    if not to_file:
        config["handlers"].pop("file", None)
        config["handlers"]["console"]["formatter"] = "brief"
        config["root"]["handlers"] = ["console"]
    elif logfile:
        pathlib.Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        config["handlers"]["file"]["filename"] = logfile
    if console_level:
        config["handlers"]["console"]["level"] = console_level

    logging.config.dictConfig(config)
