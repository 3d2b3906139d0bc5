import sys
from .commands import dispatch, parse_args
from .logging_setup import setup_logger


def main(argv=None):

    command, settings = parse_args(argv)

    # Console logging on stderr until the service's own log is opened;
    # stdout belongs to ExaBGP.
    logger = setup_logger(
        name=settings.logger_name,
        log_file=None,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        console=True,
        enable_structured_console=settings.enable_structured_console,
    )

    exit_code = 0
    try:
        exit_code = dispatch(command, settings)
    except SystemExit as e:
        exit_code = e.code if isinstance(e.code, int) else 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    finally:
        for h in logger.handlers:
            try:
                h.flush()
            except Exception:
                pass
        sys.exit(exit_code)

if __name__ == "__main__":
    main()
