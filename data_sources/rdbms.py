import json

from sqlalchemy import create_engine

from warehouse.config import Settings


def _dumps(value):
    return json.dumps(value, default=str)


def make_engine(url=None, echo=False):
    """
    Engine for the core's tables.  Defaults to DATABASE_URL from the
    environment (local Postgres via psycopg2).
    """
    url = url or Settings.from_env().database_url
    return create_engine(url, echo=echo, future=True, json_serializer=_dumps)
