from __future__ import annotations

import re


def generate_rps_id(cnpj: str, serie: str, numero: int) -> str:
    """Generate the 37-character Id of an InfDeclaracaoPrestacaoServico.

    Format: RPS + CNPJ(14) + serie(5) + numero(15)
    Example: RPS1234567800019900RPS000000000000042
    """
    serie_id = re.sub(r"[^0-9A-Za-z]", "", serie)
    parts = [
        "RPS",
        cnpj.zfill(14),
        serie_id.zfill(5),
        str(numero).zfill(15),
    ]
    rps_id = "".join(parts)
    if len(rps_id) != 37:
        raise ValueError(f"RPS Id must be 37 chars, got {len(rps_id)}: {rps_id}")
    return rps_id
