"""Tests for the stripe-backed enrichment client."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import stripe

from apps.payment_webhook.gateway_client import StripeGatewayClient
from libs.common.exceptions import GatewayError


class TestStripeGatewayClient:
    def test_payment_intent_expands_latest_charge(self) -> None:
        client = StripeGatewayClient(api_key="sk_test_123")
        intent = {"id": "pi_1", "latest_charge": {"id": "ch_1"}}
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=intent) as retrieve:
            result = client.retrieve_payment_intent("pi_1")

        assert result == intent
        retrieve.assert_called_once_with("pi_1", api_key="sk_test_123", expand=["latest_charge"])

    def test_line_items_are_unwrapped(self) -> None:
        client = StripeGatewayClient(api_key="sk_test_123")
        page = {"object": "list", "data": [{"id": "li_1"}, "junk"]}
        with patch.object(stripe.checkout.Session, "list_line_items", return_value=page) as listing:
            items = client.list_checkout_line_items("cs_1")

        assert items == [{"id": "li_1"}]
        assert listing.call_args.kwargs["expand"] == ["data.price.product"]

    def test_session_lookup_by_payment_intent(self) -> None:
        client = StripeGatewayClient(api_key="sk_test_123")
        with patch.object(stripe.checkout.Session, "list", return_value={"data": []}):
            assert client.find_checkout_session("pi_1") is None
        with patch.object(stripe.checkout.Session, "list", return_value={"data": [{"id": "cs_1"}]}):
            assert client.find_checkout_session("pi_1") == {"id": "cs_1"}

    def test_sdk_errors_become_gateway_errors(self) -> None:
        client = StripeGatewayClient(api_key="sk_test_123")
        error = stripe.InvalidRequestError("No such charge: 'ch_x'", param="id")
        with patch.object(stripe.Charge, "retrieve", side_effect=error):
            with pytest.raises(GatewayError, match="charge lookup failed"):
                client.retrieve_charge("ch_x")
