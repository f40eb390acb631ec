from __future__ import annotations

from dataclasses import dataclass

from fiskal.utils.zki import DEFAULT_BUSINESS_PREMISE, DEFAULT_REGISTER_DEVICE

PRODUCTION = "production"


@dataclass(frozen=True)
class Issuer:
    """The company fiscalizing invoices, with credentials for both protocols."""

    oib: str
    name: str
    street: str
    city: str
    postal_code: str
    country: str = "HR"
    bank_account: str = ""
    in_vat_system: bool = True
    business_premise: str = DEFAULT_BUSINESS_PREMISE  # OznPosPr
    register_device: str = DEFAULT_REGISTER_DEVICE  # OznNapUr
    operator_oib: str | None = None
    fiscal_oib: str | None = None

    fina_enabled: bool = False
    cert_path: str | None = None
    cert_password: str | None = None
    fina_environment: str = "test"

    eracun_enabled: bool = False
    eracun_username: str | None = None
    eracun_password: str | None = None
    software_id: str | None = None
    company_bu: str = ""
    eracun_environment: str = "test"

    @property
    def effective_fiscal_oib(self) -> str:
        return self.fiscal_oib or self.oib

    @property
    def effective_operator_oib(self) -> str:
        return self.operator_oib or self.oib

    @property
    def eracun_production(self) -> bool:
        return self.eracun_environment == PRODUCTION

    @classmethod
    def from_dict(cls, d: dict) -> Issuer:
        """Create an Issuer from a YAML-loaded dict with ``fina`` and ``eracun`` sections."""
        fina = d.get("fina") or {}
        eracun = d.get("eracun") or {}
        return cls(
            oib=str(d["oib"]),
            name=d["name"],
            street=d.get("street", ""),
            city=d.get("city", ""),
            postal_code=str(d.get("postal_code", "")),
            country=d.get("country", "HR"),
            bank_account=d.get("bank_account", ""),
            in_vat_system=bool(d.get("in_vat_system", True)),
            business_premise=str(d.get("business_premise") or DEFAULT_BUSINESS_PREMISE),
            register_device=str(d.get("register_device") or DEFAULT_REGISTER_DEVICE),
            operator_oib=_opt_str(d.get("operator_oib")),
            fiscal_oib=_opt_str(fina.get("oib") or d.get("fiscal_oib")),
            fina_enabled=bool(fina.get("enabled", False)),
            cert_path=fina.get("cert_path"),
            cert_password=fina.get("cert_password"),
            fina_environment=fina.get("environment", "test"),
            eracun_enabled=bool(eracun.get("enabled", False)),
            eracun_username=_opt_str(eracun.get("username")),
            eracun_password=eracun.get("password"),
            software_id=_opt_str(eracun.get("software_id")),
            company_bu=str(eracun.get("company_bu") or ""),
            eracun_environment=eracun.get("environment", "test"),
        )


def _opt_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
