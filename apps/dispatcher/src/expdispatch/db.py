from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine


def create_db_engine(url: str | URL, *, echo: bool = False) -> Engine:
    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
    )
