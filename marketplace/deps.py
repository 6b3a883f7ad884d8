from fastapi import Request

# Common dependencies used across routers. The instances are built once at
# startup (see main.on_startup) and read back from app.state per request.


def get_users_service(request: Request):
    return request.app.state.users_service


def get_cache(request: Request):
    return request.app.state.cache


def get_sms_service(request: Request):
    return request.app.state.sms_service


def get_mail_service(request: Request):
    return request.app.state.mail_service


def get_auth_service(request: Request):
    return request.app.state.auth_service
