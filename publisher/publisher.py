import os
import time
import random
import httpx

TARGET_URL = os.environ.get("TARGET_URL", "http://ingestor:8080/publish")

TOTAL = int(os.environ.get("TOTAL", "1000"))
DUP_RATE = float(os.environ.get("DUP_RATE", "0.2"))
BATCH = int(os.environ.get("BATCH", "100"))
SLEEP_MS = int(os.environ.get("SLEEP_MS", "0"))
USERS = int(os.environ.get("USERS", "50"))
FIRST_PAYMENT_ID = int(os.environ.get("FIRST_PAYMENT_ID", "1000"))


def build_payments(total: int, dup_rate: float, first_id: int = FIRST_PAYMENT_ID):
    """Payments with unique ids plus a ``dup_rate`` share of repeats, shuffled."""
    if total <= 0:
        return []
    unique_count = max(1, int(total * (1.0 - dup_rate)))
    base = [
        {
            "user_id": random.randint(1, USERS),
            "payment_id": first_id + i,
            "deposit_amount": random.randint(1, 1000),
        }
        for i in range(unique_count)
    ]
    payments = base[:]
    for _ in range(total - unique_count):
        payments.append(dict(random.choice(base)))

    random.shuffle(payments)
    return payments


def main():
    payments = build_payments(TOTAL, DUP_RATE)

    client = httpx.Client(timeout=30.0)
    sent = 0
    accepted = 0
    t0 = time.time()

    while sent < len(payments):
        chunk = payments[sent:sent + BATCH]
        r = client.post(TARGET_URL, json=chunk)
        r.raise_for_status()
        accepted += r.json()["accepted"]
        sent += len(chunk)

        if SLEEP_MS > 0:
            time.sleep(SLEEP_MS / 1000.0)

    dt = time.time() - t0
    print(f"sent={sent} accepted={accepted} time_sec={dt:.2f} pps={sent / dt if dt else 0.0:.2f}")

if __name__ == "__main__":
    main()
