from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from treasury.logging_config import configure_logging
from treasury.routers import treasury
from treasury.security.headers import install_security_headers
from treasury.services.action_token_service import warn_if_default_secret

configure_logging()
warn_if_default_secret()

app = FastAPI(title='Treasury Draw Requests')

install_security_headers(app)

app.include_router(treasury.router)


@app.get('/healthz', response_class=PlainTextResponse)
def healthz() -> str:
    return 'ok'


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
