from sqlalchemy import text

from enhancer.core.config import get_settings
from enhancer.db import build_engine, is_postgres

TABLES = ("profiles", "images", "billing_grants", "webhook_events")


def main() -> int:
    engine = build_engine(get_settings())
    print('dialect:', engine.dialect.name)
    print('url:', engine.url.render_as_string(hide_password=True))
    ok = True
    with engine.begin() as conn:
        try:
            conn.execute(text('SELECT 1'))
            print('db: ok')
        except Exception as e:
            print('db error:', e)
            return 1
        for table in TABLES:
            try:
                if is_postgres(engine):
                    found = conn.execute(text("SELECT to_regclass(:t)"), {"t": f"public.{table}"}).scalar()
                else:
                    found = conn.execute(
                        text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t"), {"t": table}
                    ).scalar()
                print(f'{table} table:', bool(found))
                ok = ok and bool(found)
            except Exception as e:
                print('introspection error:', e)
                ok = False
    return 0 if ok else 1


if __name__ == '__main__':
    raise SystemExit(main())
