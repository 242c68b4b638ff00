"""Tests for order placement, cancellation and the order dashboards."""

from datetime import date, timedelta

from conftest import ADDRESS, checkout


def place(client, user, lines, delivery_type="PICKUP", **extra):
    body = checkout(delivery_type, items=lines, **extra)
    return client.post("/api/orders", json=body, headers=user["headers"])


def inv_line(item, quantity):
    return {"item_type": "inventory", "item_id": str(item["_id"]), "quantity": quantity}


def listing_line(listing, quantity):
    return {"item_type": "listing", "item_id": str(listing["_id"]), "quantity": quantity}


def rental_line(rental, quantity, start, end):
    return {
        "item_type": "rental",
        "item_id": str(rental["_id"]),
        "quantity": quantity,
        "rental_start_date": start.isoformat(),
        "rental_end_date": end.isoformat(),
    }


class TestPlaceOrder:
    def test_inventory_pickup(self, client, db, buyer, add_inventory):
        item = add_inventory(stock_quantity=5, price=100.0)
        r = place(client, buyer, [inv_line(item, 2)])
        assert r.status_code == 201
        order = r.json()
        assert order["order_number"] == "ORD-000001"
        assert order["status"] == "NOT READY"
        assert order["subtotal"] == 200.0
        assert order["delivery_fee"] == 0
        assert order["total"] == 200.0
        assert order["delivery_address"] is None
        assert order["delivery"] is None

        stored = db["inventory_product"].find_one({"_id": item["_id"]})
        assert stored["stock_quantity"] == 3
        assert stored["status"] == "Available"

    def test_listing_delivery_adds_commission_and_fee(self, client, db, buyer, add_listing):
        listing = add_listing(capacity_kg=10, price_per_kg=100.0)
        r = place(client, buyer, [listing_line(listing, 3)], delivery_type="DELIVERY")
        assert r.status_code == 201
        order = r.json()
        assert order["items"][0]["price"] == 110.0
        assert order["items"][0]["line_total"] == 330.0
        assert order["subtotal"] == 330.0
        assert order["delivery_fee"] == 500
        assert order["total"] == 830.0
        assert order["delivery_address"]["city"] == ADDRESS["city"]

        delivery = db["delivery"].find_one({"order": db["order"].find_one()["_id"]})
        assert delivery["status"] == "PENDING"
        assert [h["status"] for h in delivery["status_history"]] == ["PENDING"]
        assert order["delivery"] == str(delivery["_id"])
        assert db["listing"].find_one({"_id": listing["_id"]})["capacity_kg"] == 7

    def test_selling_out_marks_listing_sold(self, client, db, buyer, add_listing):
        listing = add_listing(capacity_kg=4)
        assert place(client, buyer, [listing_line(listing, 4)]).status_code == 201
        stored = db["listing"].find_one({"_id": listing["_id"]})
        assert stored["capacity_kg"] == 0
        assert stored["status"] == "SOLD"

    def test_rental_line_books_dates(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5, rental_per_day=1000.0)
        start = date.today() + timedelta(days=10)
        end = start + timedelta(days=2)
        r = place(client, buyer, [rental_line(rental, 2, start, end)])
        assert r.status_code == 201
        assert r.json()["items"][0]["line_total"] == 6000.0

        booking = db["rental_booking"].find_one({"item": rental["_id"]})
        assert booking["quantity"] == 2
        assert booking["status"] == "CONFIRMED"
        assert booking["notes"] == "Order ORD-000001"
        assert str(booking["order_id"]) == r.json()["id"]
        assert db["rental_item"].find_one({"_id": rental["_id"]})["total_qty"] == 5

    def test_farmer_can_order(self, client, farmer, add_inventory):
        item = add_inventory()
        assert place(client, farmer, [inv_line(item, 1)]).status_code == 201

    def test_consecutive_order_numbers(self, client, buyer, add_inventory):
        item = add_inventory(stock_quantity=10)
        first = place(client, buyer, [inv_line(item, 1)]).json()
        second = place(client, buyer, [inv_line(item, 1)]).json()
        assert first["order_number"] == "ORD-000001"
        assert second["order_number"] == "ORD-000002"

    def test_taken_order_number_is_skipped(self, client, db, buyer, add_inventory):
        db["order"].insert_one({"order_number": "ORD-000002", "items": []})
        item = add_inventory()
        r = place(client, buyer, [inv_line(item, 1)])
        assert r.status_code == 201
        assert r.json()["order_number"] == "ORD-000003"

    def test_logs_buyer_and_farmer_activity(self, client, buyer, farmer, add_listing):
        listing = add_listing(capacity_kg=10)
        place(client, buyer, [listing_line(listing, 2)])

        feed = client.get("/api/orders/activities/buyer", headers=buyer["headers"]).json()
        assert [a["type"] for a in feed] == ["ORDER_PLACED"]
        assert feed[0]["metadata"]["order_number"] == "ORD-000001"

        feed = client.get("/api/orders/activities/farmer", headers=farmer["headers"]).json()
        assert [a["type"] for a in feed] == ["ITEM_SOLD"]
        assert feed[0]["metadata"]["quantity_sold"] == 2


class TestValidation:
    def test_delivery_requires_address(self, client, buyer, add_inventory):
        item = add_inventory()
        body = checkout("DELIVERY", items=[inv_line(item, 1)])
        body.pop("delivery_address")
        r = client.post("/api/orders", json=body, headers=buyer["headers"])
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"
        assert "Delivery address required" in r.json()["error"]["message"]

    def test_items_required(self, client, buyer):
        r = place(client, buyer, [])
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_quantity_must_be_positive(self, client, buyer, add_inventory):
        item = add_inventory()
        r = place(client, buyer, [inv_line(item, 0)])
        assert r.status_code == 400

    def test_not_enough_stock(self, client, db, buyer, add_inventory):
        item = add_inventory(stock_quantity=2)
        r = place(client, buyer, [inv_line(item, 3)])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Not enough stock for Urea 50kg"
        assert db["order"].count_documents({}) == 0
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 2

    def test_out_of_stock(self, client, buyer, add_inventory):
        item = add_inventory(stock_quantity=0, status="Out of stock")
        r = place(client, buyer, [inv_line(item, 1)])
        assert r.json()["error"]["message"] == "Urea 50kg is out of stock"

    def test_unknown_listing(self, client, buyer):
        missing = "0123456789abcdef01234567"
        r = place(client, buyer, [{"item_type": "listing", "item_id": missing, "quantity": 1}])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == f"Listing {missing} not found"

    def test_removed_listing(self, client, buyer, add_listing):
        listing = add_listing(status="REMOVED")
        r = place(client, buyer, [listing_line(listing, 1)])
        assert r.json()["error"]["message"] == "Listing Carrots is not available"

    def test_one_bad_line_rejects_the_order(self, client, db, buyer, add_inventory, add_listing):
        item = add_inventory(stock_quantity=5)
        listing = add_listing(capacity_kg=1)
        r = place(client, buyer, [inv_line(item, 2), listing_line(listing, 5)])
        assert r.status_code == 400
        assert db["order"].count_documents({}) == 0
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5

    def test_rental_over_capacity(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        start = date.today() + timedelta(days=3)
        end = start + timedelta(days=1)
        assert place(client, buyer, [rental_line(rental, 2, start, end)]).status_code == 201
        r = place(client, buyer, [rental_line(rental, 4, start, end)])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Only 3 available for selected dates"

    def test_repeated_lines_count_together(self, client, db, buyer, add_inventory):
        item = add_inventory(stock_quantity=5)
        r = place(client, buyer, [inv_line(item, 3), inv_line(item, 3)])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Not enough stock for Urea 50kg"
        assert db["order"].count_documents({}) == 0
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5

    def test_repeated_listing_lines_within_capacity(self, client, db, buyer, add_listing):
        listing = add_listing(capacity_kg=5)
        r = place(client, buyer, [listing_line(listing, 2), listing_line(listing, 3)])
        assert r.status_code == 201
        stored = db["listing"].find_one({"_id": listing["_id"]})
        assert stored["capacity_kg"] == 0
        assert stored["status"] == "SOLD"

    def test_overlapping_rental_lines_count_together(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        start = date.today() + timedelta(days=3)
        lines = [
            rental_line(rental, 3, start, start + timedelta(days=2)),
            rental_line(rental, 3, start + timedelta(days=2), start + timedelta(days=4)),
        ]
        r = place(client, buyer, lines)
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Only 5 available for selected dates"
        assert db["rental_booking"].count_documents({}) == 0

    def test_separate_rental_ranges_do_not_compete(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        start = date.today() + timedelta(days=3)
        lines = [
            rental_line(rental, 3, start, start + timedelta(days=1)),
            rental_line(rental, 3, start + timedelta(days=2), start + timedelta(days=3)),
        ]
        assert place(client, buyer, lines).status_code == 201
        assert db["rental_booking"].count_documents({}) == 2

    def test_admin_cannot_order(self, client, admin, add_inventory):
        item = add_inventory()
        r = place(client, admin, [inv_line(item, 1)])
        assert r.status_code == 403

    def test_requires_login(self, client, add_inventory):
        item = add_inventory()
        r = client.post("/api/orders", json=checkout(items=[inv_line(item, 1)]))
        assert r.status_code == 401


class TestOrderFromCart:
    def test_checkout_removes_selected_lines(self, client, db, buyer, add_inventory, add_listing):
        item = add_inventory(stock_quantity=5)
        listing = add_listing(capacity_kg=10)
        for line in (inv_line(item, 2), listing_line(listing, 1)):
            r = client.post("/api/cart/add", json=line, headers=buyer["headers"])
            assert r.status_code == 200

        body = checkout(selected_items=[{"item_id": str(item["_id"]), "item_type": "inventory"}])
        r = client.post("/api/orders/from-cart", json=body, headers=buyer["headers"])
        assert r.status_code == 201
        assert r.json()["total"] == 200.0
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 3

        cart = client.get("/api/cart", headers=buyer["headers"]).json()
        assert [line["item_type"] for line in cart["items"]] == ["listing"]

    def test_item_not_in_cart(self, client, buyer, add_inventory):
        item = add_inventory()
        client.post("/api/cart/add", json=inv_line(item, 1), headers=buyer["headers"])
        body = checkout(selected_items=[{"item_id": "0123456789abcdef01234567", "item_type": "inventory"}])
        r = client.post("/api/orders/from-cart", json=body, headers=buyer["headers"])
        assert r.status_code == 400
        assert "not found in cart" in r.json()["error"]["message"]

    def test_without_cart(self, client, buyer):
        body = checkout(selected_items=[{"item_id": "0123456789abcdef01234567", "item_type": "inventory"}])
        r = client.post("/api/orders/from-cart", json=body, headers=buyer["headers"])
        assert r.status_code == 404
        assert r.json()["error"]["message"] == "Cart not found"

    def test_rental_line_picked_by_dates(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        first = date.today() + timedelta(days=5)
        second = first + timedelta(days=10)
        for line in (rental_line(rental, 1, first, first), rental_line(rental, 2, second, second)):
            assert client.post("/api/cart/add", json=line, headers=buyer["headers"]).status_code == 200

        ref = {
            "item_id": str(rental["_id"]),
            "item_type": "rental",
            "rental_start_date": first.isoformat(),
            "rental_end_date": first.isoformat(),
        }
        r = client.post("/api/orders/from-cart", json=checkout(selected_items=[ref]), headers=buyer["headers"])
        assert r.status_code == 201
        assert [it["quantity"] for it in r.json()["items"]] == [1]

        left = db["cart"].find_one({"user": buyer["_id"]})["items"]
        assert [it["quantity"] for it in left] == [2]

    def test_rental_ref_without_dates_takes_every_range(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        first = date.today() + timedelta(days=5)
        second = first + timedelta(days=10)
        for line in (rental_line(rental, 1, first, first), rental_line(rental, 2, second, second)):
            client.post("/api/cart/add", json=line, headers=buyer["headers"])

        ref = {"item_id": str(rental["_id"]), "item_type": "rental"}
        r = client.post("/api/orders/from-cart", json=checkout(selected_items=[ref]), headers=buyer["headers"])
        assert r.status_code == 201
        assert sorted(it["quantity"] for it in r.json()["items"]) == [1, 2]
        assert db["cart"].find_one({"user": buyer["_id"]})["items"] == []


class TestReads:
    def test_my_orders(self, client, buyer, make_user, add_inventory):
        other = make_user("BUYER")
        item = add_inventory(stock_quantity=10)
        place(client, buyer, [inv_line(item, 1)])
        place(client, other, [inv_line(item, 1)])
        mine = client.get("/api/orders/me", headers=buyer["headers"]).json()
        assert len(mine) == 1
        assert mine[0]["customer"] == str(buyer["_id"])

    def test_other_customer_is_denied(self, client, buyer, make_user, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        other = make_user("BUYER")
        r = client.get(f"/api/orders/{order['id']}", headers=other["headers"])
        assert r.status_code == 403
        assert r.json()["error"] == {"code": "FORBIDDEN", "message": "Access denied"}

    def test_admin_sees_any_order(self, client, buyer, admin, add_listing):
        listing = add_listing()
        order = place(client, buyer, [listing_line(listing, 1)], delivery_type="DELIVERY").json()
        r = client.get(f"/api/orders/{order['id']}", headers=admin["headers"])
        assert r.status_code == 200
        body = r.json()
        assert body["customer"]["email"] == buyer["email"]
        assert body["delivery"]["status"] == "PENDING"
        assert len(body["delivery"]["status_history"]) == 1

    def test_unknown_order(self, client, buyer):
        r = client.get("/api/orders/0123456789abcdef01234567", headers=buyer["headers"])
        assert r.status_code == 404

    def test_admin_list_filters(self, client, buyer, admin, add_inventory):
        item = add_inventory(stock_quantity=10)
        place(client, buyer, [inv_line(item, 1)])
        place(client, buyer, [inv_line(item, 1)], delivery_type="DELIVERY")
        everything = client.get("/api/orders", headers=admin["headers"]).json()
        assert len(everything) == 2
        pickups = client.get("/api/orders?delivery_type=PICKUP", headers=admin["headers"]).json()
        assert len(pickups) == 1
        assert pickups[0]["customer"]["email"] == buyer["email"]

    def test_list_requires_admin(self, client, buyer):
        assert client.get("/api/orders", headers=buyer["headers"]).status_code == 403

    def test_price_is_frozen(self, client, db, buyer, add_listing):
        listing = add_listing(price_per_kg=100.0)
        order = place(client, buyer, [listing_line(listing, 1)]).json()
        db["listing"].update_one({"_id": listing["_id"]}, {"$set": {"price_per_kg": 250.0}})
        body = client.get(f"/api/orders/{order['id']}", headers=buyer["headers"]).json()
        assert body["items"][0]["price"] == 110.0
        assert body["total"] == 110.0


class TestCancel:
    def test_cancel_restores_stock_and_delivery(self, client, db, buyer, add_inventory):
        item = add_inventory(stock_quantity=5)
        order = place(client, buyer, [inv_line(item, 2)], delivery_type="DELIVERY").json()
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 3

        r = client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        assert r.status_code == 200
        assert r.json()["message"] == "Order cancelled successfully"
        assert r.json()["order"]["status"] == "CANCELLED"

        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5
        delivery = db["delivery"].find_one({"order": db["order"].find_one()["_id"]})
        assert delivery["status"] == "CANCELLED"
        assert [h["status"] for h in delivery["status_history"]] == ["PENDING", "CANCELLED"]

    def test_cancel_twice(self, client, db, buyer, add_inventory):
        item = add_inventory(stock_quantity=5)
        order = place(client, buyer, [inv_line(item, 2)]).json()
        client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        r = client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Cannot cancel this order"
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5

    def test_cancel_releases_rental_booking(self, client, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        start = date.today() + timedelta(days=5)
        end = start + timedelta(days=1)
        order = place(client, buyer, [rental_line(rental, 5, start, end)]).json()
        client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        assert db["rental_booking"].find_one({"item": rental["_id"]})["status"] == "CANCELLED"
        assert place(client, buyer, [rental_line(rental, 5, start, end)]).status_code == 201

    def test_cancel_logs_buyer_activity(self, client, buyer, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        feed = client.get("/api/orders/activities/buyer", headers=buyer["headers"]).json()
        assert sorted(a["type"] for a in feed) == ["ORDER_CANCELLED", "ORDER_PLACED"]

    def test_only_owner_or_admin(self, client, db, buyer, admin, make_user, add_inventory):
        item = add_inventory(stock_quantity=5)
        order = place(client, buyer, [inv_line(item, 1)]).json()
        other = make_user("BUYER")
        r = client.patch(f"/api/orders/{order['id']}/cancel", headers=other["headers"])
        assert r.status_code == 403
        r = client.patch(f"/api/orders/{order['id']}/cancel", headers=admin["headers"])
        assert r.status_code == 200
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5


class TestAdminStatus:
    def url(self, order):
        return f"/api/orders/{order['id']}/status"

    def test_mark_ready(self, client, buyer, admin, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        r = client.patch(self.url(order), json={"status": "READY"}, headers=admin["headers"])
        assert r.status_code == 200
        assert r.json()["status"] == "READY"

    def test_cancel_through_status_restores_stock(self, client, db, buyer, admin, add_inventory):
        item = add_inventory(stock_quantity=5)
        order = place(client, buyer, [inv_line(item, 4)]).json()
        r = client.patch(self.url(order), json={"status": "CANCELLED"}, headers=admin["headers"])
        assert r.json()["status"] == "CANCELLED"
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5

        # repeating the cancel changes nothing
        r = client.patch(self.url(order), json={"status": "CANCELLED"}, headers=admin["headers"])
        assert r.status_code == 200
        assert db["inventory_product"].find_one({"_id": item["_id"]})["stock_quantity"] == 5

    def test_cancelled_cannot_reopen(self, client, buyer, admin, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        client.patch(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
        r = client.patch(self.url(order), json={"status": "READY"}, headers=admin["headers"])
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Cancelled orders cannot be reopened"

    def test_unknown_status(self, client, buyer, admin, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        r = client.patch(self.url(order), json={"status": "SHIPPED"}, headers=admin["headers"])
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_requires_admin(self, client, buyer, add_inventory):
        item = add_inventory()
        order = place(client, buyer, [inv_line(item, 1)]).json()
        r = client.patch(self.url(order), json={"status": "READY"}, headers=buyer["headers"])
        assert r.status_code == 403


class TestFarmerStats:
    def test_revenue_from_recent_orders(self, client, buyer, farmer, add_listing, make_user):
        listing = add_listing(capacity_kg=10, price_per_kg=100.0)
        other_farmer = make_user("FARMER")
        other_listing = add_listing(owner=other_farmer, crop_name="Beans")
        place(client, buyer, [listing_line(listing, 3), listing_line(other_listing, 1)])
        cancelled = place(client, buyer, [listing_line(listing, 1)]).json()
        client.patch(f"/api/orders/{cancelled['id']}/cancel", headers=buyer["headers"])

        stats = client.get("/api/orders/stats/farmer", headers=farmer["headers"]).json()
        assert stats["available_listings"] == 1
        assert stats["total_sales_count"] == 1
        assert stats["month_revenue"] == 330.0
        assert set(stats["date_range"]) == {"from", "to"}

    def test_farmer_only(self, client, buyer):
        assert client.get("/api/orders/stats/farmer", headers=buyer["headers"]).status_code == 403
