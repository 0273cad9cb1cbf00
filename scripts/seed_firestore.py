import argparse

from google.cloud import firestore  # uses GOOGLE_APPLICATION_CREDENTIALS env var

from tools.orders import ORDERS_COLLECTION, FirestoreOrderStore, demo_orders

# Run with: PYTHONPATH=. python scripts/seed_firestore.py --user user123


def seed(owner_id: str = "user123", other_owner_id: str = "user456") -> int:
    store = FirestoreOrderStore(firestore.Client())
    orders = demo_orders(owner_id=owner_id, other_owner_id=other_owner_id)
    for order in orders:
        store.upsert(order)
        print(f"  {order.order_id} -> {order.owner_id} ({order.status.value})")
    return len(orders)


def main():
    parser = argparse.ArgumentParser(description=f"Seed demo orders into the '{ORDERS_COLLECTION}' collection.")
    parser.add_argument("--user", default="user123", help="owner of the main demo orders")
    parser.add_argument("--other-user", default="user456", help="owner of the foreign demo order")
    args = parser.parse_args()

    count = seed(args.user, args.other_user)
    print(f"Firestore seeding complete: {count} orders.")


if __name__ == "__main__":
    main()
