"""
Command-line counter for the checkout engine.

This script wires ``CheckoutService`` into an interactive loop.  It
prompts for input, calls the service and prints cart totals; the
business logic stays free of I/O and is tested on its own.
"""

import sys

from .app import CheckoutService
from .config import load_config
from .errors import CheckoutError
from .logging_config import configure_logging


def print_cart(service: CheckoutService, cart_id: str) -> None:
    cart = service.get_cart(cart_id)
    t = service.cart_totals(cart_id)
    lines = list(cart.lines)
    if not lines:
        print("Cart is empty.")
    for idx, ln in enumerate(lines):
        print(f"[{idx}] {ln.name} x {ln.quantity} @ {ln.unit_price} - {ln.discount} + tax {ln.tax_amount} = {ln.line_total}")
    print(f"Subtotal {t.subtotal}  Discount {t.total_discount}  Tax {t.total_tax}  TOTAL {t.grand_total}")
    for idx, tender in enumerate(cart.ledger.tenders):
        print(f"  tender [{idx}] {tender.method.value} {tender.amount} {tender.reference or ''}")
    print(f"Paid {t.paid}  Due {t.due}  Change {t.change}")


def interactive_cli() -> None:
    """Run the counter loop until the operator exits."""
    config = load_config()
    configure_logging(config.log_dir, config.log_level)
    service = CheckoutService(config)
    cart_id = service.start_cart().id

    def print_menu() -> None:
        print("\n-- Checkout --")
        print("1. Scan barcode")
        print("2. Add item by ID")
        print("3. Update line")
        print("4. Remove line")
        print("5. Cart discount %")
        print("6. Add tender")
        print("7. View cart")
        print("8. Settle")
        print("9. Discard cart and start over")
        print("0. Exit")

    while True:
        print_menu()
        choice = input("Select an option: ").strip()
        try:
            if choice == "1":
                code = input("Barcode: ").strip()
                qty = input("Quantity [1]: ").strip() or "1"
                service.add_line(cart_id, barcode=code, quantity=qty)
                print_cart(service, cart_id)
            elif choice == "2":
                try:
                    item_id = int(input("Item ID: "))
                except ValueError:
                    print("Please enter a numeric item ID.")
                    continue
                qty = input("Quantity [1]: ").strip() or "1"
                service.add_line(cart_id, item_id=item_id, quantity=qty)
                print_cart(service, cart_id)
            elif choice == "3":
                try:
                    index = int(input("Line #: "))
                except ValueError:
                    print("Please enter a numeric line number.")
                    continue
                qty = input("New quantity (blank keeps): ").strip() or None
                price = input("New unit price (blank keeps): ").strip() or None
                disc = input("Line discount amount (blank keeps): ").strip() or None
                service.update_line(cart_id, index, quantity=qty, unit_price=price, discount=disc)
                print_cart(service, cart_id)
            elif choice == "4":
                try:
                    index = int(input("Line #: "))
                except ValueError:
                    print("Please enter a numeric line number.")
                    continue
                service.remove_line(cart_id, index)
                print_cart(service, cart_id)
            elif choice == "5":
                service.apply_discount(cart_id, input("Percent: ").strip())
                print_cart(service, cart_id)
            elif choice == "6":
                method = input("Method (CASH/CARD/UPI/WALLET/GIFT_CARD/STORE_CREDIT): ").strip()
                amount = input("Amount: ").strip()
                ref = input("Reference (optional): ").strip() or None
                service.add_tender(cart_id, method, amount, ref)
                print_cart(service, cart_id)
            elif choice == "7":
                print_cart(service, cart_id)
            elif choice == "8":
                receipt = service.settle(cart_id)
                print(f"\nSettled. Receipt {receipt.receipt_number}, total {receipt.grand_total}, change {receipt.change}")
                cart_id = service.start_cart().id
            elif choice == "9":
                service.discard_cart(cart_id)
                cart_id = service.start_cart().id
                print("Started a new cart.")
            elif choice == "0":
                print("Exiting checkout.")
                break
            else:
                print("Invalid option. Please try again.")
        except CheckoutError as exc:
            print(f"{exc.kind}: {exc}")


def main() -> None:
    try:
        interactive_cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
