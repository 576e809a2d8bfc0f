"""
Tests for grnjdr/data_loading.py

Files are written to pytest's tmp_path in the same layout as data/<CANCER>/.
"""

import numpy as np
import pandas as pd
import pytest

from grnjdr.data_loading import (
    anndata_to_frame,
    build_view_anndata,
    harmonize_sample_ids,
    load_cancer_data,
    load_clinical_table,
    load_omics_matrix,
    resolve_data_file,
)


def _write_matrix(path, features, samples, values, compression=None):
    df = pd.DataFrame(values, index=features, columns=samples)
    df.to_csv(path, sep="\t", compression=compression)


def test_load_omics_matrix_transposes_to_samples_by_features(tmp_path):
    path = tmp_path / "expression.tsv"
    _write_matrix(path, ["TP53", "EGFR", "MYC"], ["s1", "s2"],
                  np.arange(6).reshape(3, 2))

    df = load_omics_matrix(path)

    assert df.shape == (2, 3)
    assert list(df.index) == ["s1", "s2"]
    assert list(df.columns) == ["TP53", "EGFR", "MYC"]
    assert df.loc["s2", "EGFR"] == 3


def test_load_omics_matrix_drops_duplicates_and_all_nan_samples(tmp_path):
    path = tmp_path / "expression.tsv"
    path.write_text(
        "\ts1\ts2\ts3\n"
        "TP53\t1\t2\tNA\n"
        "TP53\t5\t6\tNA\n"
        "EGFR\t3\t4\tNA\n"
    )

    df = load_omics_matrix(path)

    assert list(df.index) == ["s1", "s2"]
    assert list(df.columns) == ["TP53", "EGFR"]
    # First occurrence of the duplicated feature is kept
    assert df.loc["s1", "TP53"] == 1


def test_load_omics_matrix_reads_gzip(tmp_path):
    path = tmp_path / "methylation.tsv.gz"
    _write_matrix(path, ["cg1", "cg2"], ["s1"], [[0.1], [0.9]], compression="gzip")

    df = load_omics_matrix(path)

    assert df.shape == (1, 2)
    assert np.isclose(df.loc["s1", "cg2"], 0.9)


def test_load_omics_matrix_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_omics_matrix(tmp_path / "nope.tsv")


def test_resolve_data_file_prefers_gzip(tmp_path):
    (tmp_path / "expression.tsv").write_text("x")
    (tmp_path / "expression.tsv.gz").write_bytes(b"x")

    assert resolve_data_file(tmp_path, "expression.tsv").name == "expression.tsv.gz"
    with pytest.raises(FileNotFoundError):
        resolve_data_file(tmp_path, "cnv.tsv")


def test_harmonize_sample_ids_truncates_and_filters_primary():
    ids = [
        "TCGA-A1-A0SB-01A-11R-A144-07",
        "TCGA-A1-A0SB-11A-11R-A144-07",  # normal tissue
        "TCGA-A1-A0SC-06A",  # metastasis
        "TCGA-A1-A0SD-03A",  # primary blood cancer
    ]
    mapping = harmonize_sample_ids(ids)

    assert mapping == {
        "TCGA-A1-A0SB-01A-11R-A144-07": "TCGA-A1-A0SB-01",
        "TCGA-A1-A0SD-03A": "TCGA-A1-A0SD-03",
    }


def test_harmonize_sample_ids_keeps_all_types_when_not_primary_only():
    mapping = harmonize_sample_ids(["TCGA-A1-A0SB-11A"], primary_only=False)
    assert mapping == {"TCGA-A1-A0SB-11A": "TCGA-A1-A0SB-11"}


def test_harmonize_sample_ids_handles_dots_patients_and_duplicates():
    mapping = harmonize_sample_ids([
        "TCGA.A1.A0SB.01A",
        "TCGA-A1-A0SB-01B",  # second aliquot of the same sample
        "TCGA-A1-A0SE",  # patient barcode
        "sample_7",  # non-TCGA identifiers pass through
    ])

    assert mapping == {
        "TCGA.A1.A0SB.01A": "TCGA-A1-A0SB-01",
        "TCGA-A1-A0SE": "TCGA-A1-A0SE-01",
        "sample_7": "sample_7",
    }


def test_harmonize_sample_ids_keeps_dots_outside_tcga_barcodes():
    mapping = harmonize_sample_ids(["s.1", "GSM123.2", "tcga.a1.a0sb.01a"])

    assert mapping == {
        "s.1": "s.1",
        "GSM123.2": "GSM123.2",
        "tcga.a1.a0sb.01a": "TCGA-A1-A0SB-01",
    }


def test_harmonize_sample_ids_patient_sample_type():
    mapping = harmonize_sample_ids(["TCGA-AB-2803"], patient_sample_type="03")
    assert mapping == {"TCGA-AB-2803": "TCGA-AB-2803-03"}


def test_load_clinical_table_uses_patient_barcode(tmp_path):
    path = tmp_path / "clinical.tsv"
    pd.DataFrame({
        "bcr_patient_barcode": ["TCGA-A1-A0SB", "TCGA-A1-A0SC"],
        "vital_status": ["Dead", "Alive"],
    }).to_csv(path, sep="\t", index=False)

    clinical = load_clinical_table(path)

    assert list(clinical.index) == ["TCGA-A1-A0SB-01", "TCGA-A1-A0SC-01"]
    assert clinical.loc["TCGA-A1-A0SB-01", "vital_status"] == "Dead"


def test_load_clinical_table_bad_id_column(tmp_path):
    path = tmp_path / "clinical.tsv"
    pd.DataFrame({"id": ["a"], "x": [1]}).to_csv(path, sep="\t", index=False)

    with pytest.raises(ValueError, match="ID column"):
        load_clinical_table(path, id_column="patient")


def test_load_cancer_data_harmonises_views(tmp_path):
    cancer_dir = tmp_path / "BRCA"
    cancer_dir.mkdir()
    samples = ["TCGA-AA-0001-01A-11R", "TCGA-AA-0002-01A-11R", "TCGA-AA-0002-11A-11R"]
    _write_matrix(cancer_dir / "expression.tsv.gz", ["TP53", "EGFR"], samples,
                  np.ones((2, 3)), compression="gzip")
    _write_matrix(cancer_dir / "indegree.tsv", ["TP53", "EGFR", "MYC"], samples,
                  np.zeros((3, 3)))
    pd.DataFrame({
        "bcr_patient_barcode": ["TCGA-AA-0001", "TCGA-AA-0002"],
        "OS": [1, 0],
        "OS.time": [100, 200],
    }).to_csv(cancer_dir / "clinical.tsv", sep="\t", index=False)

    data = load_cancer_data("BRCA", tmp_path, views=["expression", "indegree"],
                            verbose=False)

    assert set(data["views"]) == {"expression", "indegree"}
    expected = ["TCGA-AA-0001-01", "TCGA-AA-0002-01"]
    assert list(data["views"]["expression"].index) == expected
    assert data["views"]["indegree"].shape == (2, 3)
    assert list(data["clinical"].index) == expected


def test_load_cancer_data_aligns_patients_to_blood_samples(tmp_path):
    cancer_dir = tmp_path / "LAML"
    cancer_dir.mkdir()
    samples = ["TCGA-AB-2803-03A-01T", "TCGA-AB-2805-03A-01T"]
    _write_matrix(cancer_dir / "expression.tsv", ["TP53", "FLT3"], samples, np.ones((2, 2)))
    pd.DataFrame({
        "bcr_patient_barcode": ["TCGA-AB-2803", "TCGA-AB-2805", "TCGA-AB-2999"],
        "OS": [1, 0, 1],
        "OS.time": [100, 200, 300],
    }).to_csv(cancer_dir / "clinical.tsv", sep="\t", index=False)

    data = load_cancer_data("LAML", tmp_path, views=["expression"], verbose=False)

    assert list(data["clinical"].index) == [
        "TCGA-AB-2803-03", "TCGA-AB-2805-03", "TCGA-AB-2999-01",
    ]
    assert set(data["views"]["expression"].index) <= set(data["clinical"].index)


def test_load_cancer_data_unknown_view(tmp_path):
    with pytest.raises(ValueError, match="Unknown views"):
        load_cancer_data("BRCA", tmp_path, views=["proteomics"], verbose=False)


def test_load_cancer_data_missing_view_file(tmp_path):
    (tmp_path / "BRCA").mkdir()
    with pytest.raises(FileNotFoundError):
        load_cancer_data("BRCA", tmp_path, views=["expression"], verbose=False)


def test_build_view_anndata_round_trip():
    df = pd.DataFrame([[1.0, 2.0], [3.0, 4.0]], index=["s1", "s2"], columns=["a", "b"])

    adata = build_view_anndata(df, "expression")

    assert adata.shape == (2, 2)
    assert adata.uns["view"] == "expression"
    pd.testing.assert_frame_equal(anndata_to_frame(adata), df, check_names=False)
