"""Tests for rental items, availability and bookings."""

from datetime import date, timedelta

from rentals import available_quantity, booked_quantity, create_booking


def day(offset):
    return date.today() + timedelta(days=offset)


def book(client, user, rental, start, end, quantity):
    body = {"start_date": start.isoformat(), "end_date": end.isoformat(), "quantity": quantity}
    return client.post(f"/api/rentals/{rental['_id']}/book", json=body, headers=user["headers"])


class TestAvailability:
    def test_overlapping_bookings_count(self, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        create_booking(db, rental, buyer["_id"], 2, day(10), day(12))
        assert booked_quantity(db, rental["_id"], day(11), day(15)) == 2
        assert available_quantity(db, rental, day(11), day(15)) == 3

    def test_touching_ranges_overlap(self, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        create_booking(db, rental, buyer["_id"], 2, day(10), day(12))
        assert available_quantity(db, rental, day(12), day(14)) == 3
        assert available_quantity(db, rental, day(13), day(14)) == 5

    def test_cancelled_bookings_are_ignored(self, db, buyer, add_rental):
        rental = add_rental(total_qty=5)
        booking = create_booking(db, rental, buyer["_id"], 4, day(10), day(12))
        db["rental_booking"].update_one({"_id": booking["_id"]}, {"$set": {"status": "CANCELLED"}})
        assert available_quantity(db, rental, day(10), day(12)) == 5

    def test_never_negative(self, db, buyer, add_rental):
        rental = add_rental(total_qty=2)
        create_booking(db, rental, buyer["_id"], 2, day(1), day(2))
        db["rental_item"].update_one({"_id": rental["_id"]}, {"$set": {"total_qty": 1}})
        rental = db["rental_item"].find_one({"_id": rental["_id"]})
        assert available_quantity(db, rental, day(1), day(2)) == 0

    def test_endpoint(self, client, db, farmer, add_rental):
        rental = add_rental(total_qty=5)
        create_booking(db, rental, farmer["_id"], 2, day(10), day(12))
        r = client.get(
            f"/api/rentals/{rental['_id']}/availability",
            params={"start": day(11).isoformat(), "end": day(11).isoformat()},
            headers=farmer["headers"],
        )
        assert r.status_code == 200
        assert r.json() == {"total_qty": 5, "available_qty": 3}

    def test_endpoint_rejects_inverted_range(self, client, farmer, add_rental):
        rental = add_rental()
        r = client.get(
            f"/api/rentals/{rental['_id']}/availability",
            params={"start": day(5).isoformat(), "end": day(4).isoformat()},
            headers=farmer["headers"],
        )
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Invalid date range"

    def test_endpoint_unknown_item(self, client, farmer):
        r = client.get(
            "/api/rentals/0123456789abcdef01234567/availability",
            params={"start": day(1).isoformat(), "end": day(2).isoformat()},
            headers=farmer["headers"],
        )
        assert r.status_code == 404
        assert r.json()["error"]["message"] == "Item not found"


class TestBooking:
    def test_book(self, client, db, farmer, add_rental):
        rental = add_rental(total_qty=5)
        r = book(client, farmer, rental, day(3), day(4), 2)
        assert r.status_code == 201
        body = r.json()
        assert body["quantity"] == 2
        assert body["status"] == "CONFIRMED"
        assert body["renter"] == str(farmer["_id"])
        assert db["rental_booking"].count_documents({"item": rental["_id"]}) == 1

    def test_overbooking_rejected(self, client, db, farmer, add_rental):
        rental = add_rental(total_qty=5)
        create_booking(db, rental, farmer["_id"], 2, day(10), day(12))
        r = book(client, farmer, rental, day(11), day(13), 4)
        assert r.status_code == 400
        assert r.json()["error"]["message"] == "Only 3 available for selected dates"

    def test_inverted_range(self, client, farmer, add_rental):
        rental = add_rental()
        r = book(client, farmer, rental, day(5), day(4), 1)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_farmers_only(self, client, buyer, add_rental):
        rental = add_rental()
        assert book(client, buyer, rental, day(1), day(2), 1).status_code == 403


class TestAdminCatalog:
    def test_list_is_public(self, client, add_rental):
        add_rental(product_name="Tiller")
        r = client.get("/api/rentals")
        assert r.status_code == 200
        assert [item["product_name"] for item in r.json()] == ["Tiller"]

    def test_create_and_update(self, client, admin):
        body = {"product_name": " Water pump ", "rental_per_day": 750, "total_qty": 2}
        r = client.post("/api/rentals", json=body, headers=admin["headers"])
        assert r.status_code == 201
        created = r.json()
        assert created["product_name"] == "Water pump"

        r = client.put(f"/api/rentals/{created['id']}", json={"total_qty": 4}, headers=admin["headers"])
        assert r.status_code == 200
        assert r.json()["total_qty"] == 4
        assert r.json()["rental_per_day"] == 750

    def test_create_requires_admin(self, client, farmer):
        body = {"product_name": "Pump", "rental_per_day": 750, "total_qty": 2}
        assert client.post("/api/rentals", json=body, headers=farmer["headers"]).status_code == 403

    def test_delete_removes_bookings(self, client, db, admin, farmer, add_rental):
        rental = add_rental()
        create_booking(db, rental, farmer["_id"], 1, day(1), day(2))
        r = client.delete(f"/api/rentals/{rental['_id']}", headers=admin["headers"])
        assert r.status_code == 200
        assert db["rental_item"].count_documents({}) == 0
        assert db["rental_booking"].count_documents({}) == 0

    def test_delete_rented_item_conflicts(self, client, db, admin, buyer, add_rental):
        rental = add_rental()
        body = {
            "delivery_type": "PICKUP",
            "contact_name": "Nimal",
            "contact_phone": "0771234567",
            "contact_email": "nimal@example.com",
            "items": [{
                "item_type": "rental",
                "item_id": str(rental["_id"]),
                "quantity": 1,
                "rental_start_date": day(2).isoformat(),
                "rental_end_date": day(3).isoformat(),
            }],
        }
        assert client.post("/api/orders", json=body, headers=buyer["headers"]).status_code == 201
        r = client.delete(f"/api/rentals/{rental['_id']}", headers=admin["headers"])
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "ITEM_IN_USE"
        assert db["rental_item"].count_documents({}) == 1

    def test_delete_unknown(self, client, admin):
        r = client.delete("/api/rentals/0123456789abcdef01234567", headers=admin["headers"])
        assert r.status_code == 404
