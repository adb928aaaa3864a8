from __future__ import annotations

import uuid

from .db import SessionLocal
from .services.auto_responder import seed_default_rules
from .services.templates import seed_default_templates
from .services.tenant_settings import get_or_create_tenant_settings
from .settings import settings


def seed_tenant(tenant_id: uuid.UUID) -> dict[str, int]:
    with SessionLocal() as db:
        get_or_create_tenant_settings(db, tenant_id)
        templates = seed_default_templates(db, tenant_id)
        rules = seed_default_rules(db, tenant_id)
        db.commit()
    return {"templates": templates, "rules": rules}


def main() -> None:
    dev_tenant_id = uuid.UUID(settings.dev_tenant_id)
    created = seed_tenant(dev_tenant_id)
    print(f"Seed complete: tenant={dev_tenant_id} templates={created['templates']} rules={created['rules']}")


if __name__ == "__main__":
    main()
