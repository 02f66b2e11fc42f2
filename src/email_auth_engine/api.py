from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from .core import AuthenticationEngine, check_dkim_selector, discover_dkim_selectors, generate_report
from .errors import EngineError, MalformedRecord
from .models import CompositeVerdict
from .spf import count_lookups, parse_spf_record

app = FastAPI(title="email-auth-engine", version="0.2.0")


class VerifyRequest(BaseModel):
    raw_message: str
    connecting_ip: str
    mail_from: Optional[str] = None
    helo: Optional[str] = None


class ReportRequest(BaseModel):
    domain: str
    selectors: Optional[List[str]] = None


@lru_cache(maxsize=1)
def get_engine() -> AuthenticationEngine:
    return AuthenticationEngine()


@app.get("/health")
async def health():
    """Simple health check endpoint."""
    return {"status": "ok", "service": "email-auth-engine"}


@app.get("/spf/{domain}")
async def get_spf(domain: str, engine: AuthenticationEngine = Depends(get_engine)):
    """Return parsed SPF records and lookup counts for a domain."""
    domain = domain.strip().lower()
    try:
        spfs = [t for t in await engine.resolver.query_txt(domain) if t.strip().lower().startswith("v=spf1")]
        details = []
        resolved = []
        total_lookup = 0
        errors = []
        for s in spfs:
            try:
                details.append(parse_spf_record(s).model_dump(mode="json"))
            except MalformedRecord as e:
                errors.append(str(e))
            r, lookup_count, errs = await count_lookups(engine.resolver, domain, s)
            resolved.append(sorted(r))
            total_lookup += lookup_count
            errors.extend(errs)
        return {"domain": domain, "spf": {"records": spfs, "details": details, "resolved_includes": resolved,
                                          "estimated_dns_lookup_count": total_lookup, "errors": errors}}
    except EngineError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/dkim/{domain}")
async def get_dkim(domain: str, selector: Optional[str] = Query(None),
                   engine: AuthenticationEngine = Depends(get_engine)):
    """Return DKIM selector info.

    If 'selector' is provided, check that selector only. Otherwise try the
    common selector names.
    """
    domain = domain.strip().lower()
    try:
        if selector:
            info = await check_dkim_selector(engine.resolver, domain, selector.strip())
            return {"domain": domain, "selector": selector, "info": info}
        infos = await discover_dkim_selectors(engine.resolver, domain)
        return {"domain": domain, "found_selectors": infos}
    except EngineError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/dmarc/{domain}")
async def get_dmarc(domain: str, engine: AuthenticationEngine = Depends(get_engine)):
    """Return the DMARC record that governs a domain and its parsed tags."""
    domain = domain.strip().lower()
    try:
        found = await engine.dmarc.fetch_record(domain)
    except MalformedRecord as e:
        raise HTTPException(status_code=422, detail=str(e))
    except EngineError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if found is None:
        return {"domain": domain, "dmarc_raw": None, "record_domain": None, "dmarc_tags": {},
                "statistics": engine.statistics(domain)}
    record_domain, record = found
    return {"domain": domain, "dmarc_raw": record.raw, "record_domain": record_domain,
            "dmarc_tags": record.tags, "statistics": engine.statistics(record_domain)}


@app.post("/verify", response_model=CompositeVerdict)
async def verify(req: VerifyRequest, engine: AuthenticationEngine = Depends(get_engine)):
    if not req.raw_message.strip():
        raise HTTPException(status_code=400, detail="raw_message is empty")
    return await engine.verify_email(req.raw_message, req.connecting_ip.strip(), mail_from=req.mail_from,
                                     helo=req.helo)


@app.post("/report")
async def report(req: ReportRequest, engine: AuthenticationEngine = Depends(get_engine)):
    if not req.domain.strip():
        raise HTTPException(status_code=400, detail="domain is empty")
    try:
        return await generate_report(req.domain.strip(), engine.resolver, selectors=req.selectors)
    except EngineError as e:
        raise HTTPException(status_code=500, detail=str(e))
