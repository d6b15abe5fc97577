import logging
from pathlib import Path


def setup_run_logging(
    *,
    level: str = "INFO",
    venue: str,
    symbol: str,
    yyyymmdd: str,
    run_id: str,
    base_dir: str | Path = "out/logs",
) -> Path:
    """Configure run-scoped logging for one budgeted invocation.

    Logs go to the console and to a file collocated with the run:
      <base_dir>/<venue>/<symbol>/<yyyymmdd>/<run_id>/run.log
    """
    log_dir = Path(base_dir).joinpath(venue, symbol, yyyymmdd, run_id)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "run.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(fh)
    root.addHandler(sh)

    # Frame-level client logs would dwarf the run log outside of DEBUG.
    if root.level > logging.DEBUG:
        logging.getLogger("websockets").setLevel(logging.WARNING)
    return log_path
