from __future__ import annotations

import argparse
import getpass
import logging
import stat
import sys
from importlib.resources import files
from pathlib import Path

from emissor_abrasf.models.document import DocumentState, FiscalDocument
from emissor_abrasf.services.exceptions import EmissorError
from emissor_abrasf.utils.formatters import format_brl

logger = logging.getLogger(__name__)

_STATE_LABELS = {
    DocumentState.PROCESSING: "processando",
    DocumentState.ISSUED: "emitida",
    DocumentState.ERROR: "erro",
    DocumentState.CANCELLED: "cancelada",
}


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    """Remove a key from a .env file if present."""
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  AVISO: {env_file} tem permissões abertas.")
            print("  Recomendação: chmod 600", env_file)
    except OSError:
        pass


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive certificate password setup. Returns True if it was stored."""
    from emissor_abrasf.config import (
        _delete_keyring_password,
        _password_env_var,
        _set_keyring_password,
    )
    from emissor_abrasf.utils.certificate import validate_certificate

    print()
    print("Configuração do certificado digital")
    print("────────────────────────────────────")
    print()

    inscricao = input("Inscrição municipal do emitente (vazio para pular): ").strip()
    if not inscricao:
        print("  Configuração de certificado pulada.")
        return False

    while True:
        pfx_path = input("Caminho do certificado .pfx/.p12: ").strip()
        if Path(pfx_path).is_file():
            break
        print(f"  Arquivo não encontrado: {pfx_path}")

    pfx_password = getpass.getpass("Senha do certificado: ")

    print()
    print("Validando certificado…")
    try:
        info = validate_certificate(pfx_path, pfx_password)
    except Exception as e:
        print(f"  ERRO: Certificado inválido ou senha incorreta: {e}")
        return False

    print(f"  Sujeito: {info['subject']}")
    print(f"  Válido até: {info['not_after']}")
    if not info["valid"]:
        print("  AVISO: Certificado expirado")
    print(f"  Informe 'certificado: {pfx_path}' no YAML do emitente.")

    env_file = config_dir / ".env"
    env_var = _password_env_var(inscricao)
    keyring_ok = _check_keyring_available()

    print()
    print("Onde deseja armazenar a senha?")
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "Keychain do sistema (recomendado)"))
    options.append(("2", "Arquivo .env no diretório de configuração"))
    options.append(("3", "Não armazenar (definir manualmente)"))
    for num, label in options:
        print(f"  {num}. {label}")

    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Escolha [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1":
        if _set_keyring_password(inscricao, pfx_password):
            print("  Senha armazenada no keychain do sistema.")
            _remove_env_var(env_file, env_var)
            return True
        print("  Falha ao armazenar no keychain. Usando arquivo .env.")
    if choice in ("1", "2"):
        _upsert_env_var(env_file, env_var, pfx_password)
        print(f"  Senha salva em {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password(inscricao)
        return True

    _remove_env_var(env_file, env_var)
    _delete_keyring_password(inscricao)
    print(f"  Senha não armazenada. Defina {env_var} antes de emitir.")
    return False


def _init_config() -> None:
    """Copy bundled config templates to the user's config/data directories."""
    from emissor_abrasf.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("emissor_abrasf") / "templates"

    (config_dir / "issuers").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    for rel in ["issuers/emitente.yaml.example", "transacao.yaml.example"]:
        dest = config_dir / rel
        if dest.exists():
            print(f"  já existe: {dest}")
            continue
        src = templates / rel
        with src.open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  criado: {dest}")

    print()
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    try:
        answer = input("\nDeseja configurar o certificado digital agora? [S/n]: ").strip().lower()
        if answer in ("", "s", "sim", "y", "yes"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    print()
    print("Próximos passos:")
    print(f"  1. Copie issuers/emitente.yaml.example para issuers/<nome>.yaml em {config_dir}")
    print("  2. Preencha inscrição municipal, CNPJ, códigos de serviço e alíquota")
    print("  3. Execute: emissor-abrasf emitir <nome> transacao.yaml")


def _load_issuer(name: str):
    from emissor_abrasf.config import load_issuer
    from emissor_abrasf.models.issuer import IssuerProfile

    return IssuerProfile.from_dict(load_issuer(name))


def _print_document(doc: FiscalDocument) -> None:
    print(f"Documento:   {doc.id}")
    print(f"Transação:   {doc.transaction_id}")
    print(f"RPS:         {doc.numero_rps} série {doc.serie_rps} ({doc.issuer_scope})")
    print(f"Situação:    {_STATE_LABELS[doc.state]}")
    print(f"Valor:       {format_brl(doc.breakdown.valor_servicos)}")
    print(f"ISS:         {format_brl(doc.breakdown.valor_iss)} ({doc.breakdown.aliquota}%)")
    print(f"Líquido:     {format_brl(doc.breakdown.valor_liquido)}")
    if doc.numero_nota:
        print(f"NFS-e:       {doc.numero_nota} (verificação {doc.codigo_verificacao})")
        print(f"Link:        {doc.link_nfse}")
    if doc.mensagem_erro:
        print(f"Erro:        {doc.mensagem_erro}")
    if doc.motivo_cancelamento:
        print(f"Cancelada:   {doc.cancelled_at} ({doc.motivo_cancelamento})")


def _cmd_emitir(args: argparse.Namespace) -> int:
    from emissor_abrasf.config import load_yaml
    from emissor_abrasf.models.transaction import FiscalTransaction
    from emissor_abrasf.services.issuance import issue

    issuer = _load_issuer(args.emitente)
    transaction = FiscalTransaction.from_dict(load_yaml(Path(args.arquivo)))
    doc = issue(transaction, issuer)
    _print_document(doc)
    return 0 if doc.state is DocumentState.ISSUED else 1


def _cmd_reemitir(args: argparse.Namespace) -> int:
    from emissor_abrasf.services.issuance import retry

    doc = retry(args.documento, _load_issuer(args.emitente))
    _print_document(doc)
    return 0 if doc.state is DocumentState.ISSUED else 1


def _cmd_abandonar(args: argparse.Namespace) -> int:
    from emissor_abrasf.services.issuance import abandon

    _print_document(abandon(args.documento, args.motivo))
    return 0


def _cmd_consultar(args: argparse.Namespace) -> int:
    from emissor_abrasf.utils.registry import find_live_document, get_document

    if args.transacao:
        doc = find_live_document(args.transacao)
        if doc is None:
            print(f"Transação {args.transacao} sem documento ativo.")
            return 1
    elif args.documento:
        doc = get_document(args.documento)
    else:
        print("Informe o documento ou --transacao.")
        return 2
    _print_document(doc)
    return 0


def _cmd_listar(args: argparse.Namespace) -> int:
    from emissor_abrasf.utils.registry import list_documents

    scope = _load_issuer(args.emitente).scope if args.emitente else None
    docs = list_documents(issuer_scope=scope, transaction_id=args.transacao, state=args.estado)
    if not docs:
        print("Nenhum documento encontrado.")
        return 0
    for doc in docs:
        nota = doc.numero_nota or "-"
        print(
            f"{doc.id}  RPS {doc.numero_rps:>6}  {_STATE_LABELS[doc.state]:<11}"
            f"  NFS-e {nota:<10}  {format_brl(doc.breakdown.valor_servicos):>16}"
            f"  {doc.transaction_id}"
        )
    return 0


def _cmd_cancelar(args: argparse.Namespace) -> int:
    from emissor_abrasf.services.cancellation import cancel

    _print_document(cancel(args.documento, args.motivo))
    return 0


def _cmd_ajustar_rps(args: argparse.Namespace) -> int:
    from emissor_abrasf.utils.sequence import current_rps, set_rps

    issuer = _load_issuer(args.emitente)
    anterior = current_rps(issuer.scope)
    set_rps(issuer.scope, args.numero)
    print(f"Contador RPS de {issuer.scope}: {anterior} -> {args.numero}")
    return 0


def _cmd_verificar(args: argparse.Namespace) -> int:
    from emissor_abrasf.config import load_credential
    from emissor_abrasf.services.gateway import check_connectivity
    from emissor_abrasf.utils.certificate import validate_certificate
    from emissor_abrasf.utils.registry import check_store_health
    from emissor_abrasf.utils.sequence import peek_next_rps

    ok = True
    health = check_store_health()
    print(f"Base de documentos: {'ok' if health.documents_ok else 'CORROMPIDA'}"
          f" ({health.document_count} documentos, {health.processing_count} em processamento)")
    print(f"Contador RPS:       {'ok' if health.sequence_ok else 'CORROMPIDO'}")
    ok = ok and health.documents_ok and health.sequence_ok

    issuer = _load_issuer(args.emitente)
    if health.sequence_ok:
        print(f"Próximo RPS:        {peek_next_rps(issuer.scope)} ({issuer.scope})")
    try:
        credential = load_credential(issuer)
        info = validate_certificate(credential.pfx_path, credential.password)
        print(f"Certificado:        {info['subject']} (válido até {info['not_after']})")
        ok = ok and info["valid"]
    except Exception as e:
        print(f"Certificado:        ERRO: {e}")
        return 1

    try:
        check_connectivity(credential, issuer.ambiente, issuer.endpoint)
        print(f"Prefeitura:         acessível ({issuer.ambiente})")
    except Exception as e:
        print(f"Prefeitura:         inacessível: {e}")
        ok = False
    return 0 if ok else 1


def _preflight() -> bool:
    """Verify minimal config before running a command.

    Auto-creates the data directory. Returns False with a helpful message
    when the config directory has no issuer profile.
    """
    from emissor_abrasf.config import get_config_dir, get_data_dir, list_issuers

    get_data_dir().mkdir(parents=True, exist_ok=True)

    config_dir = get_config_dir()
    if not config_dir.is_dir():
        print(f"Erro: diretório de configuração não encontrado: {config_dir}")
        print("Execute 'emissor-abrasf init' para criar os arquivos de exemplo.")
        return False
    if not list_issuers():
        print(f"Erro: nenhum emitente configurado em {config_dir / 'issuers'}")
        print("Execute 'emissor-abrasf init' e configure o emitente.")
        return False
    return True


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="emissor-abrasf", description="Emissão de NFS-e ABRASF")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="cria arquivos de configuração de exemplo")

    p = sub.add_parser("emitir", help="emite uma NFS-e a partir de um arquivo YAML")
    p.add_argument("emitente")
    p.add_argument("arquivo")
    p.set_defaults(func=_cmd_emitir)

    p = sub.add_parser("reemitir", help="reemite um documento em erro com novo RPS")
    p.add_argument("emitente")
    p.add_argument("documento")
    p.set_defaults(func=_cmd_reemitir)

    p = sub.add_parser("abandonar", help="move para erro um documento preso em processamento")
    p.add_argument("documento")
    p.add_argument("motivo")
    p.set_defaults(func=_cmd_abandonar)

    p = sub.add_parser("consultar", help="mostra um documento")
    p.add_argument("documento", nargs="?")
    p.add_argument("--transacao", help="documento ativo da transação")
    p.set_defaults(func=_cmd_consultar)

    p = sub.add_parser("listar", help="lista documentos")
    p.add_argument("--emitente")
    p.add_argument("--transacao")
    p.add_argument("--estado", choices=[s.value for s in DocumentState])
    p.set_defaults(func=_cmd_listar)

    p = sub.add_parser("cancelar", help="cancela uma NFS-e emitida")
    p.add_argument("documento")
    p.add_argument("motivo")
    p.set_defaults(func=_cmd_cancelar)

    p = sub.add_parser("ajustar-rps", help="avança o contador RPS (último número já usado)")
    p.add_argument("emitente")
    p.add_argument("numero", type=int)
    p.set_defaults(func=_cmd_ajustar_rps)

    p = sub.add_parser("verificar", help="verifica base local, certificado e prefeitura")
    p.add_argument("emitente")
    p.set_defaults(func=_cmd_verificar)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the emissor-abrasf CLI."""
    args = _build_parser().parse_args(argv)
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "init":
        _init_config()
        return

    if not _preflight():
        sys.exit(1)

    try:
        code = args.func(args)
    except (EmissorError, FileNotFoundError, KeyError, ValueError) as e:
        logger.debug("Comando %s falhou", args.command, exc_info=True)
        print(f"Erro: {e}")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
