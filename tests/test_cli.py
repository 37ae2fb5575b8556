from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

from emissor_abrasf.cli import (
    _check_keyring_available,
    _init_config,
    _preflight,
    _remove_env_var,
    _setup_certificate,
    _upsert_env_var,
    _warn_open_permissions,
    main,
)
from emissor_abrasf.config import Credential
from emissor_abrasf.models.document import DocumentState
from emissor_abrasf.services import issuance as issuance_mod
from emissor_abrasf.services.exceptions import InvalidState
from emissor_abrasf.services.gateway import Accepted, Unreachable
from emissor_abrasf.services.tax import compute
from emissor_abrasf.utils import sequence
from emissor_abrasf.utils.registry import create_document, list_documents, update_document

REASON = "Servico nao prestado ao tomador"


@pytest.fixture
def env_dirs(monkeypatch, config_dir, data_dir, transaction_dict):
    """Config dir with one issuer ('acme') plus a transaction file."""
    monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
    tx_file = config_dir / "transacao.yaml"
    tx_file.write_text(yaml.dump(transaction_dict, allow_unicode=True))
    return {"config": config_dir, "data": data_dir, "tx_file": tx_file}


@pytest.fixture
def mock_authority():
    with (
        patch.object(issuance_mod, "load_credential", return_value=Credential("/f.pfx", "pw")),
        patch.object(issuance_mod, "submit_envelope") as mock_submit,
    ):
        mock_submit.return_value = Accepted(
            numero_nota="2025123",
            codigo_verificacao="AB12-CD34",
            link_nfse="https://nfse.example/2025123",
            raw="<r/>",
        )
        yield mock_submit


class TestMain:
    @patch("emissor_abrasf.cli._init_config")
    def test_init_dispatches(self, mock_init):
        main(["init"])
        mock_init.assert_called_once()

    @patch("emissor_abrasf.cli._preflight", return_value=False)
    def test_exit_1_on_failed_preflight(self, mock_preflight):
        with pytest.raises(SystemExit, match="1"):
            main(["consultar", "abc"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])

    def test_emitir(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        out = capsys.readouterr().out
        assert "emitida" in out
        assert "2025123" in out
        assert "R$ 950,00" in out
        [doc] = list_documents()
        assert doc.state is DocumentState.ISSUED

    def test_emitir_unreachable_exits_1(self, env_dirs, mock_authority, capsys):
        mock_authority.return_value = Unreachable("Tempo esgotado")
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        out = capsys.readouterr().out
        assert "erro" in out
        assert "Tempo esgotado" in out

    def test_emitir_twice_prints_error(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        out = capsys.readouterr().out
        assert "Erro: Transação pedido-0001 já possui documento ativo" in out

    def test_emitir_invalid_transaction(self, env_dirs, mock_authority, transaction_dict, capsys):
        transaction_dict["valor_deducoes"] = "5000.00"
        env_dirs["tx_file"].write_text(yaml.dump(transaction_dict))
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        assert "valor_deducoes" in capsys.readouterr().out
        mock_authority.assert_not_called()

    def test_unknown_issuer(self, env_dirs, capsys):
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", "nope", str(env_dirs["tx_file"])])
        assert "Erro:" in capsys.readouterr().out

    def test_reemitir(self, env_dirs, mock_authority, capsys):
        mock_authority.return_value = Unreachable("Tempo esgotado")
        with pytest.raises(SystemExit):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        [failed] = list_documents()

        mock_authority.return_value = Accepted("10", "X", "https://l", "<r/>")
        main(["reemitir", "acme", failed.id])
        docs = list_documents(state="issued")
        assert [d.numero_rps for d in docs] == [2]

    def test_consultar_and_listar(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        capsys.readouterr()

        main(["consultar", doc.id])
        assert "AB12-CD34" in capsys.readouterr().out

        main(["listar", "--emitente", "acme", "--estado", "issued"])
        out = capsys.readouterr().out
        assert doc.id in out
        assert "pedido-0001" in out

        main(["listar", "--estado", "cancelled"])
        assert "Nenhum documento" in capsys.readouterr().out

    def test_consultar_not_found(self, env_dirs, capsys):
        with pytest.raises(SystemExit, match="1"):
            main(["consultar", "nope"])
        assert "Documento não encontrado" in capsys.readouterr().out

    def test_cancelar(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        main(["cancelar", doc.id, REASON])
        assert "cancelada" in capsys.readouterr().out
        assert list_documents()[0].state is DocumentState.CANCELLED

    def test_cancelar_short_reason(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        with pytest.raises(SystemExit, match="1"):
            main(["cancelar", doc.id, "curto"])
        assert "pelo menos 15" in capsys.readouterr().out

    def test_cancelar_failed_document(self, env_dirs, mock_authority, capsys):
        mock_authority.side_effect = RuntimeError("interrompido")
        with pytest.raises(SystemExit):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        [failed] = list_documents()
        assert failed.state is DocumentState.ERROR
        with pytest.raises(SystemExit, match="1"):
            main(["cancelar", failed.id, REASON])
        assert "Somente NFS-e emitidas" in capsys.readouterr().out

    def test_verificar(self, env_dirs, test_pfx, capsys):
        pfx_path, password = test_pfx
        with (
            patch(
                "emissor_abrasf.config.load_credential",
                return_value=Credential(pfx_path, password),
            ),
            patch("emissor_abrasf.services.gateway.get") as mock_get,
        ):
            main(["verificar", "acme"])
        out = capsys.readouterr().out
        assert "Test Certificate" in out
        assert "Próximo RPS:        1 (homologacao:123456001)" in out
        assert "acessível" in out
        mock_get.assert_called_once()

    def test_abandonar_then_emitir(self, env_dirs, mock_authority, transaction, issuer, capsys):
        stuck = create_document(
            transaction,
            issuer,
            compute(transaction, issuer.aliquota_iss),
            created_at="2025-10-01T10:00:00-03:00",
        )
        with pytest.raises(SystemExit, match="1"):
            main(["emitir", "acme", str(env_dirs["tx_file"])])
        assert "já possui documento ativo" in capsys.readouterr().out

        main(["abandonar", stuck.id, "processo interrompido"])
        assert "Abandonado pelo operador: processo interrompido" in capsys.readouterr().out

        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [issued] = list_documents(state="issued")
        assert issued.numero_rps == 2

    def test_abandonar_issued_rejected(self, env_dirs, mock_authority, capsys):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        with pytest.raises(SystemExit, match="1"):
            main(["abandonar", doc.id, "processo interrompido"])
        assert "Somente documentos em processamento" in capsys.readouterr().out

    def test_consultar_por_transacao(self, env_dirs, mock_authority, capsys):
        with pytest.raises(SystemExit, match="1"):
            main(["consultar", "--transacao", "pedido-0001"])
        assert "sem documento ativo" in capsys.readouterr().out

        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        capsys.readouterr()
        main(["consultar", "--transacao", "pedido-0001"])
        assert doc.id in capsys.readouterr().out

    def test_consultar_without_target(self, env_dirs, capsys):
        with pytest.raises(SystemExit, match="2"):
            main(["consultar"])
        assert "--transacao" in capsys.readouterr().out

    def test_ajustar_rps(self, env_dirs, mock_authority, capsys):
        main(["ajustar-rps", "acme", "41"])
        assert "0 -> 41" in capsys.readouterr().out
        main(["emitir", "acme", str(env_dirs["tx_file"])])
        [doc] = list_documents()
        assert doc.numero_rps == 42

    def test_ajustar_rps_backwards_rejected(self, env_dirs, capsys):
        main(["ajustar-rps", "acme", "10"])
        with pytest.raises(SystemExit, match="1"):
            main(["ajustar-rps", "acme", "5"])
        assert "não pode retroceder" in capsys.readouterr().out
        assert sequence.current_rps("homologacao:123456001") == 10


class TestPreflight:
    def test_preflight_ok(self, monkeypatch, config_dir, tmp_path):
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: data_dir)
        assert _preflight() is True
        assert data_dir.is_dir()

    def test_preflight_no_config(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "missing"
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: data_dir)
        assert _preflight() is False
        out = capsys.readouterr().out
        assert "emissor-abrasf init" in out

    def test_preflight_no_issuer(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: data_dir)
        assert _preflight() is False
        out = capsys.readouterr().out
        assert "nenhum emitente" in out


class TestInitConfig:
    def test_copies_templates(self, monkeypatch, tmp_path):
        config_dir = tmp_path / "config"
        data_dir = tmp_path / "data"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: data_dir)
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        assert (config_dir / "issuers" / "emitente.yaml.example").exists()
        assert (config_dir / "transacao.yaml.example").exists()
        assert data_dir.exists()

    def test_templates_parse(self, monkeypatch, tmp_path):
        from emissor_abrasf.models.issuer import IssuerProfile
        from emissor_abrasf.models.transaction import FiscalTransaction

        config_dir = tmp_path / "config"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: tmp_path / "data")
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        issuer = yaml.safe_load((config_dir / "issuers" / "emitente.yaml.example").read_text())
        tx = yaml.safe_load((config_dir / "transacao.yaml.example").read_text())
        assert IssuerProfile.from_dict(issuer).scope == "homologacao:123456001"
        assert FiscalTransaction.from_dict(tx).recipient.uf == "BA"

    def test_skips_existing(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        (config_dir / "issuers").mkdir(parents=True)
        (config_dir / "transacao.yaml.example").write_text("existing")
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: tmp_path / "data")
        monkeypatch.setattr("builtins.input", lambda _: "n")
        _init_config()
        assert (config_dir / "transacao.yaml.example").read_text() == "existing"
        assert "já existe" in capsys.readouterr().out

    def test_eof_during_cert_prompt(self, monkeypatch, tmp_path, capsys):
        config_dir = tmp_path / "config"
        monkeypatch.setattr("emissor_abrasf.config.get_config_dir", lambda: config_dir)
        monkeypatch.setattr("emissor_abrasf.config.get_data_dir", lambda: tmp_path / "data")
        monkeypatch.setattr("builtins.input", MagicMock(side_effect=EOFError))
        _init_config()
        assert "Configuração:" in capsys.readouterr().out


class TestEnvFile:
    def test_upsert_creates_new_file(self, tmp_path):
        env_file = tmp_path / "sub" / ".env"
        _upsert_env_var(env_file, "KEY", "value")
        content = env_file.read_text()
        assert "KEY=" in content
        assert "value" in content

    def test_upsert_updates_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("MY_KEY='old'\nOTHER='keep'\n")
        _upsert_env_var(env_file, "MY_KEY", "new")
        content = env_file.read_text()
        assert "new" in content
        assert "'old'" not in content
        assert "OTHER=" in content

    def test_upsert_special_chars(self, tmp_path):
        from dotenv import dotenv_values

        env_file = tmp_path / ".env"
        _upsert_env_var(env_file, "PW", "abc #def")
        assert dotenv_values(env_file)["PW"] == "abc #def"

    def test_remove_existing_key(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("KEEP='yes'\nREMOVE='me'\n")
        _remove_env_var(env_file, "REMOVE")
        content = env_file.read_text()
        assert "KEEP=" in content
        assert "REMOVE" not in content

    def test_remove_missing_file(self, tmp_path):
        _remove_env_var(tmp_path / ".env", "KEY")

    def test_warns_group_readable(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o644)
        _warn_open_permissions(env_file)
        assert "permissões abertas" in capsys.readouterr().out

    def test_no_warn_restricted(self, tmp_path, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("SECRET=x\n")
        env_file.chmod(0o600)
        _warn_open_permissions(env_file)
        assert capsys.readouterr().out == ""


class TestCheckKeyringAvailable:
    def test_available_with_real_backend(self):
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = MagicMock()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = type("FailKeyring", (), {})
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is True

    def test_unavailable_with_fail_backend(self):
        fail_cls = type("Keyring", (), {})
        mock_kr = MagicMock()
        mock_kr.get_keyring.return_value = fail_cls()
        mock_fail_module = MagicMock()
        mock_fail_module.Keyring = fail_cls
        with patch.dict(
            "sys.modules",
            {"keyring": mock_kr, "keyring.backends.fail": mock_fail_module},
        ):
            assert _check_keyring_available() is False


class TestSetupCertificate:
    def test_skip_on_empty_inscricao(self, tmp_path, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda _: "")
        assert _setup_certificate(tmp_path) is False

    def test_invalid_cert_aborts(self, tmp_path, monkeypatch, capsys):
        fake_pfx = tmp_path / "bad.pfx"
        fake_pfx.write_bytes(b"not a real pfx")
        inputs = iter(["123456001", str(fake_pfx)])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: "wrong-pass")
        assert _setup_certificate(tmp_path) is False
        assert "ERRO" in capsys.readouterr().out

    def test_file_not_found_reprompts(self, tmp_path, monkeypatch, test_pfx, capsys):
        pfx_path, pfx_password = test_pfx
        inputs = iter(["123456001", "/nonexistent/cert.pfx", pfx_path, "3"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_abrasf.cli._check_keyring_available", lambda: False)
        with patch("emissor_abrasf.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is False
        assert "Arquivo não encontrado" in capsys.readouterr().out

    def test_successful_setup_dotenv(self, tmp_path, monkeypatch, test_pfx):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter(["123456001", pfx_path, "2"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_abrasf.cli._check_keyring_available", lambda: False)

        with patch("emissor_abrasf.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is True

        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_PFX_PASSWORD_123456001"] == pfx_password

    def test_successful_setup_keyring(self, tmp_path, monkeypatch, test_pfx):
        pfx_path, pfx_password = test_pfx
        inputs = iter(["123456001", pfx_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_abrasf.cli._check_keyring_available", lambda: True)

        with patch(
            "emissor_abrasf.config._set_keyring_password", return_value=True
        ) as mock_set:
            assert _setup_certificate(tmp_path) is True

        mock_set.assert_called_once_with("123456001", pfx_password)
        assert not (tmp_path / ".env").exists()

    def test_keyring_failure_falls_back_to_dotenv(self, tmp_path, monkeypatch, test_pfx, capsys):
        from dotenv import dotenv_values

        pfx_path, pfx_password = test_pfx
        inputs = iter(["123456001", pfx_path, "1"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_abrasf.cli._check_keyring_available", lambda: True)

        with (
            patch("emissor_abrasf.config._set_keyring_password", return_value=False),
            patch("emissor_abrasf.config._delete_keyring_password", return_value=False),
        ):
            assert _setup_certificate(tmp_path) is True

        assert "Falha ao armazenar no keychain" in capsys.readouterr().out
        vals = dotenv_values(tmp_path / ".env")
        assert vals["CERT_PFX_PASSWORD_123456001"] == pfx_password

    def test_no_store_option(self, tmp_path, monkeypatch, test_pfx, capsys):
        pfx_path, pfx_password = test_pfx
        inputs = iter(["123456001", pfx_path, "3"])
        monkeypatch.setattr("builtins.input", lambda _: next(inputs))
        monkeypatch.setattr("getpass.getpass", lambda _: pfx_password)
        monkeypatch.setattr("emissor_abrasf.cli._check_keyring_available", lambda: False)

        with patch("emissor_abrasf.config._delete_keyring_password", return_value=False):
            assert _setup_certificate(tmp_path) is False
        assert "Senha não armazenada" in capsys.readouterr().out


def test_listar_shows_error_state(env_dirs, mock_authority, capsys):
    mock_authority.return_value = Unreachable("Tempo esgotado")
    with pytest.raises(SystemExit):
        main(["emitir", "acme", str(env_dirs["tx_file"])])
    [doc] = list_documents()
    capsys.readouterr()
    main(["listar", "--transacao", "pedido-0001"])
    assert "erro" in capsys.readouterr().out
    with pytest.raises(InvalidState):
        update_document(doc.id, DocumentState.ISSUED)
