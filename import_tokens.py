from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import LedgerValidationError
from schemas import ImportRow


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="import-batch")


def dump_batch(rows: list[ImportRow], user_id: int = 1) -> str:
    payload = {"u": user_id, "rows": [row.model_dump(mode="json") for row in rows]}
    return _serializer().dumps(payload)


def load_batch(token: str, user_id: int = 1) -> list[ImportRow]:
    max_age = get_settings().import_token_max_age_secs
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired as exc:
        raise LedgerValidationError("Import preview expired, upload the file again") from exc
    except BadSignature as exc:
        raise LedgerValidationError("Invalid import token") from exc

    if data.get("u") != user_id:
        raise LedgerValidationError("Invalid import token")
    return [ImportRow.model_validate(row) for row in data.get("rows", [])]
