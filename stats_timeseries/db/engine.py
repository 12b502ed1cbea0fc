from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url

from stats_timeseries.config import Settings


def build_sqlalchemy_url(settings: Settings) -> URL:
    if settings.database_url is not None:
        return make_url(settings.database_url.get_secret_value())

    query = {
        "driver": settings.db_driver,
        "Encrypt": "yes",
        "TrustServerCertificate": "yes" if settings.db_trust_cert else "no",
    }
    return URL.create(
        "mssql+pyodbc",
        username=settings.db_user,
        password=settings.db_password.get_secret_value() if settings.db_password else None,
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_name,
        query=query,
    )


def get_engine(settings: Settings) -> Engine:
    url = build_sqlalchemy_url(settings)
    return create_engine(url, pool_pre_ping=True)
