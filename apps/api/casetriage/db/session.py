from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from casetriage.core.config import settings

url = make_url(settings.DATABASE_URL)
engine_kwargs: dict = {"pool_pre_ping": True}
connect_args: dict = {}
if url.get_backend_name().startswith("postgresql"):
    connect_args["options"] = "-c timezone=utc -c lock_timeout=%d" % int(
        settings.STORE_LOCK_TIMEOUT_SECONDS * 1000
    )
elif url.get_backend_name() == "sqlite":
    connect_args["check_same_thread"] = False
    connect_args["timeout"] = settings.STORE_LOCK_TIMEOUT_SECONDS
    if url.database in (None, "", ":memory:"):
        # One shared connection, otherwise every checkout sees an empty DB.
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
