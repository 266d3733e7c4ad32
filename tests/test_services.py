from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from support_inbox.exceptions import ConfigurationError, ExternalServiceError, ParseFailure
from support_inbox.models.schemas import KnowledgeCandidatePayload
from support_inbox.services.elasticsearch_service import ElasticsearchVectorIndex
from support_inbox.services.embedding_service import EmbeddingService, cosine_similarity
from support_inbox.services.llm_service import GeminiLLMService, parse_json_object
from support_inbox.services.messaging import SmtpMessagingChannel
from support_inbox.services.order_lookup import ShopifyOrderClient
from support_inbox.services.vector_index import InMemoryVectorIndex

from conftest import FakeLLM

ORDER_NODE = {
    "id": "gid://shopify/Order/1001",
    "name": "#1001",
    "email": "jane@customer.com",
    "createdAt": "2024-05-01T10:00:00Z",
    "displayFinancialStatus": "PAID",
    "displayFulfillmentStatus": "FULFILLED",
    "tags": ["vip"],
    "note": None,
    "fulfillments": [
        {"trackingInfo": [{"company": "UPS", "number": "1Z999", "url": "https://ups.example/1Z999"}]}
    ],
    "lineItems": {"edges": [{"node": {"title": "Smart Hub", "quantity": 2, "sku": "HUB-1"}}]},
    "customer": {
        "id": "gid://shopify/Customer/7",
        "email": "jane@customer.com",
        "firstName": "Jane",
        "lastName": "Doe",
        "numberOfOrders": "3",
        "amountSpent": {"amount": "240.50", "currencyCode": "USD"},
        "tags": [],
        "note": "Prefers email"
    }
}


def graphql_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    return response


class TestParseJsonObject:
    def test_object_wrapped_in_prose(self):
        text = 'Sure! Here you go:\n```json\n{"dialogueQuality": 0.8, "proposals": []}\n```'
        assert parse_json_object(text) == {"dialogueQuality": 0.8, "proposals": []}

    @pytest.mark.parametrize("text", [
        "",
        "nothing to see",
        "[1, 2, 3]",
        '{"a": 1} and then {"b": 2}',
        "{not json}",
    ])
    def test_unusable_output(self, text):
        with pytest.raises(ParseFailure):
            parse_json_object(text)


class TestGeminiLLMService:
    async def test_structured_output_is_validated(self):
        llm = FakeLLM(responses=['{"shouldCreateKB": true, "title": "Pairing"}'])

        payload = await llm.generate_structured("prompt", KnowledgeCandidatePayload)

        assert payload.should_create_kb
        assert payload.title == "Pairing"
        assert payload.confidence == 0.7

    async def test_schema_mismatch_is_parse_failure(self):
        llm = FakeLLM(responses=['{"title": "Pairing"}'])

        with pytest.raises(ParseFailure):
            await llm.generate_structured("prompt", KnowledgeCandidatePayload)

    async def test_unconfigured_service(self):
        llm = GeminiLLMService(api_key="")

        assert not llm.is_configured()
        with pytest.raises(ConfigurationError):
            await llm.generate_response("hello")


class TestShopifyOrderClient:
    @pytest.fixture
    def client(self):
        return ShopifyOrderClient(store_domain="shop.example.com", access_token="token")

    async def test_order_lookup_maps_fields(self, client):
        payload = {"data": {"orders": {"edges": [{"node": ORDER_NODE}]}}}
        with patch("support_inbox.services.order_lookup.requests.post",
                   return_value=graphql_response(payload)) as post:
            order = await client.get_order_by_number("#1001")

        call = post.call_args
        assert call.args[0] == "https://shop.example.com/admin/api/2024-10/graphql.json"
        assert call.kwargs["json"]["variables"] == {"query": "name:1001"}
        assert call.kwargs["headers"]["X-Shopify-Access-Token"] == "token"

        assert order.name == "#1001"
        assert order.tags == ["vip"]
        assert order.customer.orders_count == 3
        assert order.customer.total_spent == 240.5
        assert order.customer.display_name == "Jane Doe"
        assert order.line_items[0].quantity == 2
        assert order.fulfillments[0].tracking_info[0].carrier == "UPS"

    async def test_missing_order(self, client):
        payload = {"data": {"orders": {"edges": []}}}
        with patch("support_inbox.services.order_lookup.requests.post",
                   return_value=graphql_response(payload)):
            assert await client.get_order_by_number("9999") is None

    async def test_customer_lookup(self, client):
        payload = {"data": {"customers": {"edges": [{"node": ORDER_NODE["customer"]}]}}}
        with patch("support_inbox.services.order_lookup.requests.post",
                   return_value=graphql_response(payload)) as post:
            customer = await client.get_customer_by_email("jane@customer.com")

        assert post.call_args.kwargs["json"]["variables"] == {"query": "email:jane@customer.com"}
        assert customer.note == "Prefers email"

    async def test_graphql_errors_raise(self, client):
        payload = {"errors": [{"message": "Throttled"}]}
        with patch("support_inbox.services.order_lookup.requests.post",
                   return_value=graphql_response(payload)):
            with pytest.raises(ExternalServiceError, match="Throttled"):
                await client.get_order_by_number("1001")

    async def test_transport_errors_raise(self, client):
        with patch("support_inbox.services.order_lookup.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ExternalServiceError):
                await client.get_order_by_number("1001")

    async def test_unconfigured_client(self):
        client = ShopifyOrderClient(store_domain="", access_token="")

        assert not client.is_configured()
        with pytest.raises(ConfigurationError):
            await client.get_order_by_number("1001")


class TestSmtpMessagingChannel:
    @pytest.fixture
    def channel(self):
        return SmtpMessagingChannel(host="smtp.example.com", port=587, username="bot",
                                    password="secret", sender="support@example.com",
                                    starttls=True)

    async def test_send_returns_message_id(self, channel):
        with patch("support_inbox.services.messaging.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            message_id = await channel.send("lead@example.com", "[Escalation] Help",
                                            "<p>Hi</p>", thread_ref="<abc@mail>")

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=channel.timeout)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot", "secret")
        sent = server.send_message.call_args.args[0]
        assert sent["To"] == "lead@example.com"
        assert sent["In-Reply-To"] == "<abc@mail>"
        assert message_id == sent["Message-ID"]
        assert message_id.endswith("@example.com>")

    async def test_smtp_failure_raises(self, channel):
        with patch("support_inbox.services.messaging.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(ExternalServiceError):
                await channel.send("lead@example.com", "subject", "<p>Hi</p>")

    async def test_unconfigured_channel(self):
        channel = SmtpMessagingChannel(host="")

        with pytest.raises(ConfigurationError):
            await channel.send("lead@example.com", "subject", "<p>Hi</p>")

    async def test_labels_are_unsupported(self, channel):
        assert await channel.apply_label("<abc@mail>", "Escalated") is False


class TestInMemoryVectorIndex:
    async def test_search_threshold_and_order(self):
        index = InMemoryVectorIndex()
        await index.index_chunk("c1", "d1", "first", [1.0, 0.0])
        await index.index_chunk("c2", "d2", "second", [0.8, 0.6])
        await index.index_chunk("c3", "d3", "third", [0.0, 1.0])

        matches = await index.search([1.0, 0.0], threshold=0.7, top_k=5)

        assert [m.chunk_id for m in matches] == ["c1", "c2"]
        assert matches[1].similarity == pytest.approx(0.8)

        top = await index.search([1.0, 0.0], threshold=0.0, top_k=1)
        assert [m.chunk_id for m in top] == ["c1"]

    async def test_delete_doc_and_zero_query(self):
        index = InMemoryVectorIndex()
        await index.index_chunk("c1", "d1", "first", [1.0, 0.0])
        await index.index_chunk("c2", "d1", "second", [0.9, 0.1])

        await index.delete_doc("d1")

        assert index.size == 0
        assert await index.search([0.0, 0.0], threshold=0.0, top_k=3) == []


class TestElasticsearchVectorIndex:
    async def test_scores_are_converted_to_cosine(self):
        index = ElasticsearchVectorIndex("http://es.example:9200", "chunks")
        index.async_client = AsyncMock()
        index.async_client.search.return_value = {"hits": {"hits": [
            {"_score": 0.95, "_source": {"chunk_id": "c1", "doc_id": "d1"}},
            {"_score": 0.80, "_source": {"chunk_id": "c2", "doc_id": "d2"}},
        ]}}

        matches = await index.search([0.1, 0.2], threshold=0.7, top_k=3)

        assert [m.chunk_id for m in matches] == ["c1"]
        assert matches[0].similarity == pytest.approx(0.9)
        body = index.async_client.search.call_args.kwargs["body"]
        assert body["query"]["knn"]["k"] == 3

    async def test_search_failure_raises(self):
        index = ElasticsearchVectorIndex("http://es.example:9200", "chunks")
        index.async_client = AsyncMock()
        index.async_client.search.side_effect = Exception("cluster down")

        with pytest.raises(ExternalServiceError):
            await index.search([0.1], threshold=0.7, top_k=3)


async def test_embedding_empty_text_fails_without_model():
    service = EmbeddingService()

    with pytest.raises(ExternalServiceError):
        await service.embed("   ")
    assert service.model is None


@pytest.mark.parametrize("a,b,expected", [
    ([1.0, 0.0], [1.0, 0.0], 1.0),
    ([1.0, 0.0], [0.0, 2.0], 0.0),
    ([0.0, 0.0], [1.0, 1.0], 0.0),
    ([1.0, 1.0], [2.0, 2.0], 1.0),
])
def test_cosine_similarity(a, b, expected):
    assert cosine_similarity(a, b) == pytest.approx(expected)
