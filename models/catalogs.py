"""
SAT reference catalogs used by the invoice request flow.

Codes and names follow the official CFDI 4.0 catalogs; only the subset the
business actually offers is listed.
"""
from __future__ import annotations

from typing import Optional

TAX_REGIMES: dict[str, str] = {
    "601": "General de Ley Personas Morales",
    "603": "Personas Morales con Fines no Lucrativos",
    "605": "Sueldos y Salarios e Ingresos Asimilados a Salarios",
    "606": "Arrendamiento",
    "608": "Demás ingresos",
    "612": "Personas Físicas con Actividades Empresariales y Profesionales",
    "614": "Ingresos por intereses",
    "616": "Sin obligaciones fiscales",
    "621": "Incorporación Fiscal",
    "626": "Régimen Simplificado de Confianza",
}

CFDI_USES: dict[str, str] = {
    "G01": "Adquisición de mercancías",
    "G03": "Gastos en general",
    "I01": "Construcciones",
    "I02": "Mobiliario y equipo de oficina por inversiones",
    "I03": "Equipo de transporte",
    "I04": "Equipo de computo y accesorios",
    "I05": "Dados, troqueles, moldes, matrices y herramental",
    "I06": "Comunicaciones telefónicas",
    "I07": "Comunicaciones satelitales",
    "I08": "Otra maquinaria y equipo",
    "D01": "Honorarios médicos, dentales y gastos hospitalarios",
    "D02": "Gastos médicos por incapacidad o discapacidad",
    "D03": "Gastos funerales",
    "D04": "Donativos",
    "D07": "Primas por seguros de gastos médicos",
    "D08": "Gastos de transportación escolar obligatoria",
    "D10": "Pagos por servicios educativos (colegiaturas)",
    "S01": "Sin efectos fiscales",
    "CP01": "Pagos",
}


def _normalize(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def find_regime(code: Optional[str]) -> Optional[str]:
    """Return the catalog code if known, else None."""
    code = _normalize(code)
    return code if code in TAX_REGIMES else None


def find_cfdi_use(code: Optional[str]) -> Optional[str]:
    code = _normalize(code)
    return code if code in CFDI_USES else None


def describe_regime(code: Optional[str]) -> str:
    name = TAX_REGIMES.get(_normalize(code))
    return f"{code} - {name}" if name else (code or "")


def describe_cfdi(code: Optional[str]) -> str:
    name = CFDI_USES.get(_normalize(code))
    return f"{code} - {name}" if name else (code or "")
