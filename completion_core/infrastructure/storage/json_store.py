import json
import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from completion_core.config.settings import settings
from completion_core.domain.exceptions import BusinessError
from completion_core.domain.transaction import Transaction
from completion_core.infrastructure.logging.logger import logger


class JsonTransactionStore:
    """以 JSON 文件保存 Transaction，每个请求一个文件。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._txn_root = self._root / "transactions"
        self._txn_root.mkdir(parents=True, exist_ok=True)

    def record_transaction(self, transaction: Transaction) -> None:
        path = self._txn_root / f"{transaction.id}.json"
        tmp_path = self._txn_root / f"{transaction.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(transaction.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except Exception as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        logger.info(
            "store.recorded",
            extra={"extra": {"transaction": transaction.id, "status": transaction.status}},
        )

    def get_transaction(self, transaction_id: str) -> Transaction:
        path = self._txn_root / f"{transaction_id}.json"
        if not path.exists():
            raise BusinessError(code="TRANSACTION_NOT_FOUND", message=transaction_id, http_status=404)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Transaction.from_dict(data)
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    def list_transactions(self, origin: Optional[str] = None) -> List[Transaction]:
        items: List[Transaction] = []
        for path in self._txn_root.glob("*.json"):
            try:
                txn = Transaction.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except Exception:
                # 损坏的记录不影响列表
                continue
            if origin is not None and txn.origin != origin:
                continue
            items.append(txn)
        items.sort(key=lambda t: t.timestamp)
        return items

    def delete_transaction(self, transaction_id: str) -> None:
        path = self._txn_root / f"{transaction_id}.json"
        if not path.exists():
            raise BusinessError(code="TRANSACTION_NOT_FOUND", message=transaction_id, http_status=404)
        try:
            path.unlink()
        except Exception as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))
