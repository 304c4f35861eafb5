"""Tests for the case-folder runner."""

import numpy as np
import pandas as pd
import pytest
import SimpleITK as sitk

from fosp_supervoxels import find_file_by_keyword, from_engine_axes, main, match_leaf_axes, to_engine_axes


def write_case(case_dir, est, tbc, leaf_ext=".npy"):
    case_dir.mkdir()
    img = sitk.GetImageFromArray(est.astype(np.float32))
    img.SetSpacing((0.5, 0.5, 2.0))
    sitk.WriteImage(img, str(case_dir / f"{case_dir.name}_prob.nii.gz"))
    np.save(case_dir / f"{case_dir.name}_leaf{leaf_ext}", tbc)


def test_axes_round_trip():
    vol = np.arange(2 * 3 * 4).reshape(2, 3, 4)
    assert to_engine_axes(vol).shape == (3, 4, 2)
    np.testing.assert_array_equal(from_engine_axes(to_engine_axes(vol)), vol)
    single = vol[:1]
    assert to_engine_axes(single).shape == (3, 4)
    np.testing.assert_array_equal(from_engine_axes(to_engine_axes(single)), single)


def test_match_leaf_axes():
    prob_shape = (6, 16, 16)
    assert match_leaf_axes(np.zeros((6, 16, 16)), prob_shape).shape == (6, 16, 16, 1)
    assert match_leaf_axes(np.zeros((6, 16, 16, 3)), prob_shape).shape == (6, 16, 16, 3)
    assert match_leaf_axes(np.zeros((1, 16, 16)), (1, 16, 16)).shape == (1, 16, 16, 1)
    assert match_leaf_axes(np.zeros((16, 16)), (1, 16, 16)).shape == (1, 16, 16, 1)
    assert match_leaf_axes(np.zeros((16, 16, 3)), (1, 16, 16)).shape == (1, 16, 16, 3)


def test_find_file_by_keyword(tmp_path):
    for name in ("b_prob.nii.gz", "a_prob.nii", "a_prob.txt"):
        (tmp_path / name).write_text("")
    assert find_file_by_keyword(str(tmp_path), "PROB").endswith("a_prob.nii")
    assert find_file_by_keyword(str(tmp_path), "leaf") is None


def test_single_slice_case(tmp_path, split_image):
    est, tbc = split_image
    write_case(tmp_path / "case01", est[None], tbc[None])

    ok, fail = main(["--root_dir", str(tmp_path), "--k", "16", "--m", "5", "--n_iter", "5",
                     "--export_features", "--quiet"])

    assert (ok, fail) == (1, 0)
    out = sitk.ReadImage(str(tmp_path / "case01" / "superpixels_forest.nii.gz"))
    labels = sitk.GetArrayFromImage(out)
    assert labels.shape == (1, 40, 40)
    assert out.GetSpacing() == pytest.approx((0.5, 0.5, 2.0))
    assert labels.min() >= 1

    df = pd.read_csv(tmp_path / "case01" / "superpixels_features.csv")
    assert len(df) == labels.max()
    assert df["size_vox"].sum() == labels.size


def test_volume_case(tmp_path):
    rng = np.random.default_rng(5)
    est = rng.uniform(0, 1, (6, 16, 16))
    tbc = rng.integers(0, 3, (6, 16, 16, 3))
    write_case(tmp_path / "vol", est, tbc)

    ok, fail = main(["--root_dir", str(tmp_path), "--k", "8", "--n_iter", "4", "--quiet"])

    assert (ok, fail) == (1, 0)
    labels = sitk.GetArrayFromImage(sitk.ReadImage(str(tmp_path / "vol" / "superpixels_forest.nii.gz")))
    assert labels.shape == (6, 16, 16)
    assert labels.min() >= 1
    assert not (tmp_path / "vol" / "superpixels_features.csv").exists()


def test_volume_case_single_tree(tmp_path):
    rng = np.random.default_rng(7)
    est = rng.uniform(0, 1, (6, 16, 16))
    tbc = rng.integers(0, 3, (6, 16, 16))
    write_case(tmp_path / "vol", est, tbc)

    ok, fail = main(["--root_dir", str(tmp_path), "--k", "8", "--n_iter", "4", "--quiet"])

    assert (ok, fail) == (1, 0)
    labels = sitk.GetArrayFromImage(sitk.ReadImage(str(tmp_path / "vol" / "superpixels_forest.nii.gz")))
    assert labels.shape == (6, 16, 16)
    assert labels.min() >= 1


def test_missing_and_broken_cases(tmp_path, split_image, capsys):
    est, tbc = split_image
    (tmp_path / "empty").mkdir()
    write_case(tmp_path / "mismatch", est[None], tbc[None, :-1])
    write_case(tmp_path / "thin", np.full((1, 100, 2), 0.5), np.zeros((1, 100, 2, 3), dtype=int))

    ok, fail = main(["--root_dir", str(tmp_path), "--k", "1", "--quiet"])

    assert (ok, fail) == (0, 3)
    out = capsys.readouterr().out
    assert "[Skip] Missing inputs" in out
    assert "[Fail]" in out


def test_missing_root(tmp_path):
    with pytest.raises(SystemExit):
        main(["--root_dir", str(tmp_path / "nowhere")])
