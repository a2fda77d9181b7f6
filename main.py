import logging

from proxy import create_app
from settings import load_settings

# .env is read by load_settings before the environment is consulted
settings = load_settings()
logging.basicConfig(level=getattr(logging, settings["LOG_LEVEL"], logging.INFO))

app = create_app(settings)

if __name__ == "__main__":
    logging.info(f"Relay listening on {settings['HOST']}:{settings['PORT']}")
    app.run(host=settings["HOST"], port=settings["PORT"], threaded=True)
