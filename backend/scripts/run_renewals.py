from creatorpay.core.logging import configure_logging
from creatorpay.db.session import SessionLocal
from creatorpay.services.gateway import get_payment_gateway
from creatorpay.services.renewals import run_due_renewals


def main():
    configure_logging()
    result = run_due_renewals(SessionLocal, get_payment_gateway())
    print(
        "ok: renovaciones completadas "
        f"(due={result['due']}, renewed={result['renewed']}, canceled={result['canceled']}, "
        f"past_due={result['past_due']}, pending={result['pending']}, skipped={result['skipped']}, "
        f"errors={len(result['errors'])})"
    )
    if result["errors"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
