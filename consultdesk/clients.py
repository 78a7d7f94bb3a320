"""HTTP clients for the external collaborators (consent, research, analysis, generation)."""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .errors import ServiceError

logger = logging.getLogger(__name__)

SESSION_HEADER = 'x-intelligence-session-id'


class Citation(BaseModel):
    model_config = ConfigDict(extra='ignore')

    uri: Optional[str] = Field(default=None, validation_alias=AliasChoices('uri', 'url'))
    title: Optional[str] = None


class ConsentStatus(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    allow: bool = False
    email: Optional[str] = None
    name: Optional[str] = None
    company_domain: Optional[str] = Field(default=None, alias='companyDomain')
    policy_version: Optional[str] = Field(default=None, alias='policyVersion')


class LeadResearchResult(BaseModel):
    model_config = ConfigDict(extra='ignore')

    company: Optional[Dict[str, Any]] = None
    person: Optional[Dict[str, Any]] = None
    citations: List[Citation] = Field(default_factory=list)


class ResearchText(BaseModel):
    model_config = ConfigDict(extra='ignore')

    text: str
    citations: List[Citation] = Field(default_factory=list)


class ContextSnapshot(BaseModel):
    model_config = ConfigDict(extra='ignore')

    person: Optional[Dict[str, Any]] = None
    company: Optional[Dict[str, Any]] = None
    role: Optional[str] = None


def _unwrap(body: Any) -> Any:
    # tool routes answer either {ok, output: {...}} or the bare object
    if isinstance(body, dict) and isinstance(body.get('output'), dict):
        return body['output']
    return body


class ServiceClients:
    """Thin async wrappers over the collaborator HTTP API.

    A fresh ``httpx.AsyncClient`` is opened per call; ``transport`` can be
    injected (e.g. ``httpx.MockTransport``) for tests.
    """

    def __init__(self, base_url: str, session_id: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.session_id = session_id
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {SESSION_HEADER: self.session_id} if self.session_id else {}
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                 headers=headers, transport=self._transport)

    async def _request(self, service: str, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ServiceError(service, f'transport error: {e}') from e
        if resp.status_code >= 400:
            raise ServiceError(service, f'HTTP {resp.status_code}: {resp.text[:200]}', status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ServiceError(service, 'malformed JSON response', status_code=resp.status_code) from e

    def _parse(self, service: str, model, body: Any):
        try:
            return model.model_validate(_unwrap(body))
        except ValidationError as e:
            raise ServiceError(service, f'malformed response: {e.errors()[:1]}') from e

    # --- consent ---
    async def get_consent(self) -> ConsentStatus:
        body = await self._request('consent', 'GET', '/api/consent')
        return self._parse('consent', ConsentStatus, body)

    async def post_consent(self, name: str, email: str, company_url: str) -> Dict[str, Any]:
        return await self._request('consent', 'POST', '/api/consent', json={
            'name': name, 'email': email, 'companyUrl': company_url, 'sessionId': self.session_id,
        })

    # --- research ---
    async def lead_research(self, email: str, name: str, company_url: Optional[str], provider: str) -> LeadResearchResult:
        body = await self._request('lead-research', 'POST', '/api/tools/lead-research', json={
            'sessionId': self.session_id, 'email': email, 'name': name,
            'companyUrl': company_url, 'provider': provider,
        })
        return self._parse('lead-research', LeadResearchResult, body)

    async def search(self, query: str) -> ResearchText:
        body = await self._request('search', 'POST', '/api/tools/search', json={'query': query})
        return self._parse('search', ResearchText, body)

    async def analyze_urls(self, urls: List[str], query: str) -> ResearchText:
        body = await self._request('url', 'POST', '/api/tools/url', json={'urls': urls, 'query': query})
        return self._parse('url', ResearchText, body)

    async def context_snapshot(self) -> ContextSnapshot:
        body = await self._request('context', 'GET', '/api/intelligence/context',
                                   params={'sessionId': self.session_id})
        return self._parse('context', ContextSnapshot, body)

    # --- analysis ---
    async def analyze_frame(self, image: str, context: Dict[str, Any], capture_type: str = 'screen') -> str:
        body = await self._request('frame-analysis', 'POST', '/api/tools/screen', json={
            'image': image, 'type': capture_type, 'context': context,
        })
        body = _unwrap(body)
        analysis = body.get('analysis') if isinstance(body, dict) else None
        if not isinstance(analysis, str):
            raise ServiceError('frame-analysis', 'response has no analysis text')
        return analysis

    # --- structured generation ---
    async def generate_artifact(self, kind: str, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """Yield partial objects from the generator's NDJSON stream."""
        try:
            async with self._client() as client:
                async with client.stream('POST', f'/api/artifacts/{kind}', json=payload) as resp:
                    if resp.status_code >= 400:
                        raise ServiceError('artifact-generator', f'HTTP {resp.status_code}', status_code=resp.status_code)
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            yield json.loads(line)
                        except ValueError as e:
                            raise ServiceError('artifact-generator', 'malformed chunk') from e
        except httpx.HTTPError as e:
            raise ServiceError('artifact-generator', f'transport error: {e}') from e
