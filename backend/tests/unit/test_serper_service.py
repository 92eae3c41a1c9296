"""
Tests for the Serper search service.
"""

from unittest.mock import Mock, patch

import pytest

from trustpipe.services.serper_service import SerperSearchError, SerperService

RESULTS = {
    "organic": [
        {"title": "CDC", "snippet": "Vaccines are safe.", "link": "https://www.cdc.gov/vaccines"},
        {"title": "No snippet", "link": "https://example.com/empty"},
    ],
    "answerBox": {"title": "Answer", "answer": "No link found", "link": "https://answers.example.com"},
    "knowledgeGraph": {"title": "Vaccine", "description": "A biological preparation.", "website": "https://who.int"},
}


class TestSerperService:
    """Test SerperService."""

    def test_extract_search_context_orders_snippets(self) -> None:
        context = SerperService(api_key="key").extract_search_context(RESULTS)

        assert [item.snippet for item in context.snippets] == [
            "A biological preparation.", "No link found", "Vaccines are safe.",
        ]
        assert context.snippets[0].title == "Knowledge Graph: Vaccine"
        assert context.sources == ["https://www.cdc.gov/vaccines", "https://example.com/empty"]
        assert context.total_results == 2

    def test_format_for_prompt(self) -> None:
        context = SerperService(api_key="key").extract_search_context({"organic": RESULTS["organic"]})
        assert context.format_for_prompt() == "1. CDC\n   Vaccines are safe.\n   URL: https://www.cdc.gov/vaccines"

    def test_query_is_trimmed_to_ten_words(self) -> None:
        service = SerperService(api_key="key")
        claim = '"one two three four five six seven eight nine ten eleven twelve"'
        assert service._optimize_claim_query(claim) == "one two three four five six seven eight nine ten"

    def test_missing_key(self) -> None:
        service = SerperService(api_key="")
        assert not service.is_available()
        with pytest.raises(SerperSearchError):
            service.search("anything")

    @patch("trustpipe.services.serper_service.http.client.HTTPSConnection")
    def test_search_for_claim(self, mock_connection: Mock) -> None:
        response = Mock(status=200)
        response.read.return_value = b'{"organic": [{"title": "CDC", "snippet": "Safe.", "link": "https://cdc.gov"}]}'
        mock_connection.return_value.getresponse.return_value = response

        context = SerperService(api_key="key").search_for_claim("Vaccines are safe")

        assert context.original_claim == "Vaccines are safe"
        assert context.search_query == "Vaccines are safe"
        assert context.snippets[0].url == "https://cdc.gov"
        mock_connection.return_value.close.assert_called_once()

    @patch("trustpipe.services.serper_service.http.client.HTTPSConnection")
    def test_http_error(self, mock_connection: Mock) -> None:
        mock_connection.return_value.getresponse.return_value = Mock(status=503, reason="Unavailable")

        with pytest.raises(SerperSearchError, match="503"):
            SerperService(api_key="key").search("query")
