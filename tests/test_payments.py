from unittest.mock import MagicMock, patch

import pytest
import stripe

from errors import DependencyError
from payments import StripeGateway


def test_payment_intent_returns_client_secret(client, gateway):
    res = client.post("/create-payment-intent", json={"price": 2500})
    assert res.status_code == 200
    assert res.json() == {"clientSecret": "pi_2500_secret_test"}
    assert gateway.amounts == [2500]


@pytest.mark.parametrize(
    "body",
    [
        {}, {"price": 0}, {"price": -4}, {"price": "ten"}, {"price": None}, {"price": True},
        {"price": 10.9}, {"price": 1.5},
    ],
)
def test_invalid_price(client, gateway, body):
    res = client.post("/create-payment-intent", json=body)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid price amount."
    assert gateway.amounts == []


def test_processor_failure_surfaces_once(client, gateway):
    gateway.fail = True
    res = client.post("/create-payment-intent", json={"price": 100})
    assert res.status_code == 500
    assert res.json()["message"] == "Failed to create payment intent."
    assert res.json()["details"] == "card network down"
    assert gateway.amounts == [100]


def test_stripe_gateway_creates_intent():
    intent = MagicMock(client_secret="pi_123_secret")
    with patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
        secret = StripeGateway("sk_test", currency="usd").create_intent(1500)
    assert secret == "pi_123_secret"
    create.assert_called_once_with(amount=1500, currency="usd", api_key="sk_test")


def test_stripe_gateway_wraps_errors():
    with patch.object(stripe.PaymentIntent, "create", side_effect=stripe.StripeError("declined")):
        with pytest.raises(DependencyError) as exc_info:
            StripeGateway("sk_test").create_intent(1500)
    assert exc_info.value.details == "declined"


def test_whole_float_price_is_accepted(client, gateway):
    res = client.post("/create-payment-intent", json={"price": 10.0})
    assert res.status_code == 200
    assert gateway.amounts == [10]


@pytest.mark.parametrize("price", ["NaN", "Infinity"])
def test_non_finite_price_rejected(client, gateway, price):
    res = client.post(
        "/create-payment-intent",
        content=f'{{"price": {price}}}',
        headers={"Content-Type": "application/json"},
    )
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid price amount."
    assert gateway.amounts == []
