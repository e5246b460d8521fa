import argparse
import logging

from visascheduler.config import load_settings
from visascheduler.interfaces import CancellationToken
from visascheduler.notifications import (
    format_error_message,
    format_shutdown_message,
    format_startup_message,
    send_status_message,
)
from visascheduler.worker import install_signal_handlers, run_check_once, run_forever


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Visa appointment scheduler: consulate + CASV slot watcher")
    parser.add_argument("--once", action="store_true", help="Run single check and exit")
    args = parser.parse_args()

    _setup_logging()
    settings = load_settings()
    logging.getLogger(__name__).info(
        "Consulate=%s max_date=%s interval=%ss telegram=%s",
        settings.consulate,
        settings.max_date,
        settings.check_interval_seconds,
        "enabled" if settings.telegram_enabled else "disabled",
    )

    send_status_message(settings, format_startup_message(settings, mode="once" if args.once else "forever"))

    stats = None
    reason = "process exit"
    try:
        if args.once:
            run_check_once(settings)
            return 0

        cancel_token = CancellationToken()
        install_signal_handlers(cancel_token)
        stats = run_forever(settings, cancel_token=cancel_token)
        reason = "shutdown signal" if cancel_token.cancelled else reason
        return 0

    except KeyboardInterrupt:
        reason = "interrupted"
        return 130

    except Exception as e:
        reason = f"{type(e).__name__}: {e}"
        send_status_message(settings, format_error_message(e, "Monitoring loop"))
        raise

    finally:
        send_status_message(settings, format_shutdown_message(reason, stats))


if __name__ == "__main__":
    raise SystemExit(main())
