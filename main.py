import uvicorn

from bulk_mail_service.config import load_settings
from bulk_mail_service.logger import configure_logging
from bulk_mail_service.server import create_server_app

configure_logging()


if __name__ == "__main__":
    settings = load_settings()
    app = create_server_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
