"""
Serper API web search service for claim verification.
"""

import http.client
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from trustpipe.config import get_settings
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)


class SerperSearchError(Exception):
    """Exception raised when Serper search fails."""
    pass


class SearchSnippet(BaseModel):
    title: str = ""
    snippet: str
    url: str = ""


class SearchContext(BaseModel):
    """Search results condensed for a verification prompt."""
    original_claim: str = ""
    search_query: str = ""
    snippets: List[SearchSnippet] = []
    sources: List[str] = []
    total_results: int = 0

    def format_for_prompt(self, max_snippets: int = 6) -> str:
        """Render the snippets as a numbered list with their URLs."""
        lines = []
        for index, item in enumerate(self.snippets[:max_snippets], start=1):
            lines.append(f"{index}. {item.title}\n   {item.snippet}\n   URL: {item.url or 'n/a'}")
        return "\n".join(lines)


class SerperService:
    """Service for performing web searches using Serper API."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        """
        Initialize the Serper service.

        Args:
            api_key: Serper API key; read from settings when omitted
        """
        self.api_key = api_key if api_key is not None else get_settings().serper_api_key
        self.base_url = "google.serper.dev"
        self.search_endpoint = "/search"

    def is_available(self) -> bool:
        return bool(self.api_key)

    def search(self, query: str, num_results: int = 5) -> Dict[str, Any]:
        """
        Perform a web search using Serper API.

        Args:
            query: The search query string
            num_results: Number of results to return (default: 5)

        Returns:
            Raw search result payload

        Raises:
            SerperSearchError: If search fails or API key is missing
        """
        if not self.api_key:
            raise SerperSearchError("Serper API key not configured")

        logger.info("Performing web search", query=query)

        conn = http.client.HTTPSConnection(self.base_url, timeout=15)
        try:
            payload = json.dumps({"q": query, "num": num_results})
            headers = {
                "X-API-KEY": self.api_key,
                "Content-Type": "application/json",
            }

            conn.request("POST", self.search_endpoint, payload, headers)
            response = conn.getresponse()

            if response.status != 200:
                error_msg = f"Serper API returned status {response.status}: {response.reason}"
                logger.error(error_msg)
                raise SerperSearchError(error_msg)

            result = json.loads(response.read().decode("utf-8"))
            logger.info("Search completed", organic_results=len(result.get("organic", [])))
            return result

        except SerperSearchError:
            raise
        except json.JSONDecodeError as e:
            raise SerperSearchError(f"Failed to parse Serper API response: {e}")
        except Exception as e:
            raise SerperSearchError(f"Serper API request failed: {e}")
        finally:
            conn.close()

    def extract_search_context(self, search_results: Dict[str, Any]) -> SearchContext:
        """
        Extract relevant context from Serper search results.

        Knowledge graph and answer box entries, when present, are placed ahead
        of the organic results.

        Args:
            search_results: Raw search results from Serper API

        Returns:
            SearchContext with snippets and source URLs
        """
        snippets: List[SearchSnippet] = []
        sources: List[str] = []

        organic_results = search_results.get("organic", [])
        for result in organic_results:
            link = result.get("link", "")
            if result.get("snippet"):
                snippets.append(SearchSnippet(title=result.get("title", ""), snippet=result["snippet"], url=link))
            if link:
                sources.append(link)

        answer_box = search_results.get("answerBox") or {}
        answer_snippet = answer_box.get("answer", "") or answer_box.get("snippet", "")
        if answer_snippet:
            snippets.insert(0, SearchSnippet(
                title=answer_box.get("title", "Answer Box"),
                snippet=answer_snippet,
                url=answer_box.get("link", ""),
            ))

        knowledge_graph = search_results.get("knowledgeGraph") or {}
        if knowledge_graph.get("description"):
            snippets.insert(0, SearchSnippet(
                title=f"Knowledge Graph: {knowledge_graph.get('title', '')}",
                snippet=knowledge_graph["description"],
                url=knowledge_graph.get("website", ""),
            ))

        logger.debug("Extracted search context", snippets=len(snippets), sources=len(sources))
        return SearchContext(snippets=snippets, sources=sources, total_results=len(organic_results))

    def search_for_claim(self, claim: str) -> SearchContext:
        """
        Perform a targeted search for a specific claim.

        Args:
            claim: The claim text to verify

        Returns:
            SearchContext optimized for verification

        Raises:
            SerperSearchError: If the search fails
        """
        search_query = self._optimize_claim_query(claim)
        context = self.extract_search_context(self.search(search_query, num_results=5))
        context.original_claim = claim
        context.search_query = search_query
        return context

    def _optimize_claim_query(self, claim: str) -> str:
        """Strip quotes and keep the first ten words of a claim."""
        query = claim.strip().replace('"', "")
        words = query.split()
        if len(words) > 10:
            query = " ".join(words[:10])
        return query
