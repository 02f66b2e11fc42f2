from unittest.mock import AsyncMock

import pytest

from conftest import FakeResolver
from email_auth_engine.core import (
    AuthenticationEngine, dns_suggestions, generate_report, human_report, verdict_report,
)
from email_auth_engine.dkim import build_dkim_record
from email_auth_engine.keys import InMemoryKeyStore
from email_auth_engine.models import (
    DkimKeyConfig, DmarcPolicy, MechanismKind, PolicyAction, Qualifier, SpfMechanism, SpfPolicy, Verdict,
)

MESSAGE = (
    b"From: Alice <alice@corp.example>\r\n"
    b"To: bob@example.net\r\n"
    b"Subject: Lunch\r\n"
    b"Date: Mon, 19 Oct 2026 12:00:00 +0000\r\n"
    b"\r\n"
    b"Noon at the usual place?\r\n"
)


@pytest.fixture
def corp_config(keypair):
    return DkimKeyConfig(domain="corp.example", selector="mail", private_key=keypair.private_key,
                         public_key=keypair.public_key)


@pytest.fixture
def corp_resolver(keypair):
    return FakeResolver(txt={
        "corp.example": ["v=spf1 ip4:203.0.113.0/24 -all"],
        "mx.corp.example": ["v=spf1 ip4:203.0.113.9 -all"],
        "_dmarc.corp.example": ["v=DMARC1; p=reject; adkim=r; aspf=r"],
        "mail._domainkey.corp.example": [build_dkim_record(keypair.public_key)],
    })


@pytest.fixture
def engine(corp_resolver, corp_config, settings):
    return AuthenticationEngine(resolver=corp_resolver, key_store=InMemoryKeyStore((corp_config,)),
                                settings=settings)


class TestVerifyEmail:

    @pytest.mark.asyncio
    async def test_corp_example_scenario(self, engine):
        signed = engine.sign_email(MESSAGE)
        verdict = await engine.verify_email(signed, "203.0.113.9", mail_from="alice@corp.example")

        assert verdict.spf.verdict is Verdict.PASS
        assert verdict.dkim.verdict is Verdict.PASS
        assert verdict.dmarc.verdict is Verdict.PASS
        assert verdict.authenticated is True
        assert verdict.disposition is PolicyAction.NONE
        assert verdict.from_domain == "corp.example"
        assert engine.statistics("corp.example")["passed_messages"] == 1

    @pytest.mark.asyncio
    async def test_forged_message_is_rejected(self, engine):
        verdict = await engine.verify_email(MESSAGE, "198.51.100.1", mail_from="alice@corp.example")
        assert verdict.spf.verdict is Verdict.FAIL
        assert verdict.dkim.verdict is Verdict.NONE
        assert verdict.dmarc.verdict is Verdict.FAIL
        assert verdict.authenticated is False
        assert verdict.disposition is PolicyAction.REJECT

    @pytest.mark.asyncio
    async def test_envelope_sender_from_return_path(self, engine):
        message = b"Return-Path: <bounce@corp.example>\r\n" + MESSAGE
        verdict = await engine.verify_email(message, "203.0.113.50")
        assert verdict.mail_from == "<bounce@corp.example>"
        assert verdict.spf.evaluated_domain == "corp.example"
        assert verdict.spf.verdict is Verdict.PASS

    @pytest.mark.asyncio
    async def test_null_sender_uses_helo(self, engine):
        verdict = await engine.verify_email(MESSAGE, "203.0.113.9", mail_from="<>", helo="mx.corp.example")
        assert verdict.spf.evaluated_domain == "mx.corp.example"
        assert verdict.spf.verdict is Verdict.PASS

    @pytest.mark.asyncio
    async def test_str_message_accepted(self, engine):
        signed = engine.sign_email(MESSAGE.decode())
        verdict = await engine.verify_email(signed.decode(), "203.0.113.9", mail_from="alice@corp.example")
        assert verdict.authenticated

    @pytest.mark.asyncio
    async def test_never_raises_on_resolver_fault(self, settings):
        resolver = FakeResolver()
        resolver.query_txt = AsyncMock(side_effect=RuntimeError("resolver crashed"))
        engine = AuthenticationEngine(resolver=resolver, settings=settings)

        verdict = await engine.verify_email(MESSAGE, "203.0.113.9", mail_from="alice@corp.example")

        assert verdict.spf.verdict is Verdict.TEMPERROR
        assert verdict.dmarc.verdict is Verdict.TEMPERROR
        assert verdict.authenticated is False

    @pytest.mark.asyncio
    async def test_never_raises_on_garbage(self, engine):
        verdict = await engine.verify_email(b"\x00not a message at all", "203.0.113.9")
        assert verdict.spf.verdict is Verdict.NONE
        assert verdict.dkim.verdict is Verdict.PERMERROR
        assert verdict.dmarc.verdict is Verdict.PERMERROR
        assert verdict.from_domain is None

    @pytest.mark.asyncio
    async def test_verdict_report(self, engine):
        verdict = await engine.verify_email(engine.sign_email(MESSAGE), "203.0.113.9",
                                            mail_from="alice@corp.example")
        text = verdict_report(verdict)
        assert "Authenticated: yes" in text
        assert "DKIM  pass (corp.example)" in text


class TestReport:

    @pytest.mark.asyncio
    async def test_report_against_configuration(self, corp_resolver, corp_config):
        spf_policy = SpfPolicy(domain="corp.example", all_qualifier=Qualifier.FAIL, mechanisms=[
            SpfMechanism(kind=MechanismKind.IP4, target="203.0.113.0/24"),
        ])
        dmarc_policy = DmarcPolicy(domain="corp.example", policy=PolicyAction.QUARANTINE)

        report = await generate_report("corp.example", corp_resolver, selectors=["mail"], spf_policy=spf_policy,
                                       dmarc_policy=dmarc_policy, dkim_configs=[corp_config])

        assert report["spf"]["records"] == ["v=spf1 ip4:203.0.113.0/24 -all"]
        assert report["dmarc"]["tags"]["p"] == "reject"
        assert report["drift"] == ["DMARC at _dmarc.corp.example"]
        assert report["dkim"]["found_selectors"][0]["key_bits"] == 2048
        assert report["dkim"]["configured"][0]["matches"] is True
        assert report["conclusions"]["score"] == 92

        text = human_report(report)
        assert "Score (0-100): 92" in text
        assert "Selector: mail" in text

    @pytest.mark.asyncio
    async def test_report_for_unconfigured_domain(self):
        report = await generate_report("empty.example", FakeResolver(), selectors=["mail"])
        assert report["spf"]["records"] == []
        assert report["dmarc"]["raw"] is None
        assert report["dkim"]["found_selectors"] == []
        assert report["conclusions"]["score"] == 20

    @pytest.mark.asyncio
    async def test_report_counts_lookups(self):
        resolver = FakeResolver(txt={
            "example.com": ["v=spf1 mx a include:_spf.example.net ~all"],
            "_spf.example.net": ["v=spf1 a:x.example.net a:y.example.net -all"],
        })
        report = await generate_report("example.com", resolver, selectors=["mail"])
        assert report["spf"]["estimated_dns_lookup_count"] == 5
        assert report["spf"]["resolved_includes"] == ["_spf.example.net"]

    @pytest.mark.asyncio
    async def test_open_spf_record_is_penalized(self):
        resolver = FakeResolver(txt={"open.example": ["v=spf1 +all"]})
        report = await generate_report("open.example", resolver, selectors=["mail"])
        assert report["spf"]["details"][0]["all_mechanism"] == "+all"
        assert any("+all" in r for r in report["conclusions"]["reasons"])
        assert report["conclusions"]["score"] == 35


class TestDnsSuggestions:

    def test_defaults_and_configured_key(self, corp_config):
        suggestions = {s["purpose"]: s for s in dns_suggestions("corp.example", dkim_configs=[corp_config])}
        assert suggestions["SPF"]["value"] == "v=spf1 mx ~all"
        assert suggestions["DMARC"]["name"] == "_dmarc.corp.example"
        assert suggestions["DMARC"]["value"] == (
            "v=DMARC1; p=quarantine; adkim=r; aspf=r; rua=mailto:dmarc@corp.example"
        )
        assert suggestions["DKIM"]["name"] == "mail._domainkey.corp.example"
        assert suggestions["DKIM"]["value"].startswith("v=DKIM1; k=rsa; p=MII")

    def test_placeholder_without_keys(self):
        dkim = [s for s in dns_suggestions("example.com") if s["purpose"] == "DKIM"]
        assert dkim == [{"type": "TXT", "name": "default._domainkey.example.com",
                         "value": "v=DKIM1; k=rsa; p=<public_key>", "purpose": "DKIM"}]
