"""Tests for the SignFlow command line."""

import pytest
from click.testing import CliRunner

from signflow.cli import main
from signflow.embedder import PdfEmbedder
from signflow.models import DocumentStatus
from signflow.store import DocumentStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def files(tmp_path, sample_pdf, png_signature):
    pdf = tmp_path / "contract.pdf"
    pdf.write_bytes(sample_pdf)
    sig = tmp_path / "sig.png"
    sig.write_bytes(png_signature)
    return pdf, sig


def _invoke(runner, data_dir, *args):
    return runner.invoke(main, ["--data-dir", str(data_dir), *args])


def _upload(runner, data_dir, pdf):
    result = _invoke(
        runner, data_dir, "upload", str(pdf),
        "--assign-to", "bob@example.com", "--uploader-id", "u-alice", "--uploader-name", "Alice",
    )
    assert result.exit_code == 0, result.output
    return DocumentStore(data_dir).list_documents()[0]


class TestUpload:

    def test_upload(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        assert doc.name == "contract"
        assert doc.status == DocumentStatus.PENDING

    def test_upload_rejects_non_pdf(self, runner, data_dir, tmp_path):
        txt = tmp_path / "notes.txt"
        txt.write_text("hello")
        result = _invoke(
            runner, data_dir, "upload", str(txt),
            "--assign-to", "bob@example.com", "--uploader-id", "u1",
        )
        assert result.exit_code == 1
        assert "Please upload a PDF file" in result.output


class TestSignAndReview:

    def test_sign_with_image_then_verify(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])

        result = _invoke(runner, data_dir, "sign", doc.document_id, "--email", "bob@example.com", "--image", str(files[1]))
        assert result.exit_code == 0, result.output
        assert "Document signed!" in result.output

        result = _invoke(runner, data_dir, "verify", doc.document_id, "--uploader-id", "u-alice")
        assert result.exit_code == 0, result.output
        assert DocumentStore(data_dir).load_document(doc.document_id).status == DocumentStatus.VERIFIED

    def test_sign_wrong_signer(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "sign", doc.document_id, "--email", "eve@example.com", "--image", str(files[1]))
        assert result.exit_code == 1
        assert "not assigned" in result.output

    def test_sign_requires_source(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "sign", doc.document_id, "--email", "bob@example.com")
        assert result.exit_code == 1

    def test_reject(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        _invoke(runner, data_dir, "sign", doc.document_id, "--email", "bob@example.com", "--image", str(files[1]))

        result = _invoke(runner, data_dir, "reject", doc.document_id, "--uploader-id", "u-alice")
        assert result.exit_code == 0, result.output
        loaded = DocumentStore(data_dir).load_document(doc.document_id)
        assert loaded.status == DocumentStatus.REJECTED
        assert loaded.rejection_reason == "No reason provided"

    def test_verify_pending_conflicts(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "verify", doc.document_id, "--uploader-id", "u-alice")
        assert result.exit_code == 1
        assert "must be signed" in result.output


class TestAnnotate:

    def test_annotate_then_sign(self, runner, data_dir, files, tmp_path):
        out = tmp_path / "annotated.pdf"
        result = _invoke(
            runner, data_dir, "annotate", str(files[0]), str(out),
            "--signature", str(files[1]), "--signature-at", "300", "200",
            "--name", "Bob", "--date",
        )
        assert result.exit_code == 0, result.output
        assert "Signature added successfully" in result.output
        assert PdfEmbedder.page_count(out.read_bytes()) == 1

        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "sign", doc.document_id, "--email", "bob@example.com", "--pdf", str(out))
        assert result.exit_code == 0, result.output
        assert DocumentStore(data_dir).load_document(doc.document_id).signature_data == "client_side_signature"

    def test_nothing_to_place(self, runner, data_dir, files, tmp_path):
        result = _invoke(runner, data_dir, "annotate", str(files[0]), str(tmp_path / "o.pdf"))
        assert result.exit_code == 1

    def test_bad_page(self, runner, data_dir, files, tmp_path):
        result = _invoke(
            runner, data_dir, "annotate", str(files[0]), str(tmp_path / "o.pdf"),
            "--text", "hi", "--page", "5",
        )
        assert result.exit_code == 1
        assert "does not exist" in result.output


class TestListAndAudit:

    def test_list(self, runner, data_dir, files):
        _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "list", "--status", "pending")
        assert result.exit_code == 0
        assert "contract" in result.output

        result = _invoke(runner, data_dir, "list", "--status", "signed")
        assert "No documents found" in result.output

    def test_list_unknown_status(self, runner, data_dir):
        assert _invoke(runner, data_dir, "list", "--status", "lost").exit_code == 1

    def test_audit(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "audit", doc.document_id)
        assert result.exit_code == 0
        assert "Created" in result.output

    def test_delete(self, runner, data_dir, files):
        doc = _upload(runner, data_dir, files[0])
        result = _invoke(runner, data_dir, "delete", doc.document_id, "--uploader-id", "u-alice")
        assert result.exit_code == 0
        assert DocumentStore(data_dir).list_documents() == []
