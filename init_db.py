from __future__ import annotations

import argparse
import sys
from contextlib import closing
from typing import List, Optional

from psycopg2.extras import RealDictCursor

from db_helper import SCHEMA_STATEMENTS, get_conn, run_query
from settings import Settings


def parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create the inventory tables in PostgreSQL.")
    p.add_argument("--print-sql", action="store_true", help="Print the schema statements and exit without connecting")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.print_sql:
        for stmt in SCHEMA_STATEMENTS:
            print(stmt.strip().rstrip(";") + ";\n")
        return 0

    settings = Settings.from_env()
    with closing(get_conn(settings)) as conn:
        with conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            # Basic sanity checks
            ver = run_query(cur, "SHOW server_version;")[0]["server_version"]
            who = run_query(cur, "SELECT current_user AS user, current_database() AS db;")[0]
            print(f"Connected to PostgreSQL {ver} as {who['user']} on database {who['db']}")

            for stmt in SCHEMA_STATEMENTS:
                run_query(cur, stmt)
            print(f"Applied {len(SCHEMA_STATEMENTS)} schema statements.")

            conn.commit()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
