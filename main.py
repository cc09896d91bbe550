import logging

from config import configure_logging, load_settings
from runtime import PosRuntime
import pos_server


def main():
    settings = load_settings()
    configure_logging(settings)
    if not settings.has_remote:
        logging.warning('SUPABASE_URL / SUPABASE_ANON_KEY not set; running offline, sales will queue locally')
    runtime = PosRuntime(settings)
    pos_server.set_runtime(runtime)
    pos_server.start_background_services()
    try:
        # the reloader would start a second sync loop against the same queue
        pos_server.app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)
    finally:
        runtime.stop()


if __name__ == '__main__':
    main()
