from __future__ import annotations

import json
import logging
import os
from datetime import date

from itam.services.warranty_service import WarrantyService


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    tenant_id = os.getenv("SCAN_TENANT_ID") or None
    as_of_raw = os.getenv("SCAN_AS_OF")
    as_of = date.fromisoformat(as_of_raw) if as_of_raw else None
    result = WarrantyService().scan(tenant_id=tenant_id, today=as_of)
    print(json.dumps(result.model_dump(), ensure_ascii=True))


if __name__ == "__main__":
    main()
