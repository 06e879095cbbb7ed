"""Create the capability gate schema once, before the API serves traffic.

Production deployments run `alembic upgrade head` instead; this is the
shortcut for local databases.
"""

import asyncio
import os
import sys

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import is_production
from database import Base, engine, missing_tables
import models  # noqa: F401


async def bootstrap_schema() -> int:
    if is_production():
        print("❌ Refusing to create tables in production. Run `alembic upgrade head`.")
        return 1

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    missing = await missing_tables(engine)
    await engine.dispose()
    if missing:
        print(f"❌ Tables still missing after bootstrap: {', '.join(missing)}")
        return 1
    print("🗄️ Database schema ready.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(bootstrap_schema()))
