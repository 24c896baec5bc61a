import matplotlib.pyplot as plt
import pandas as pd
import pytest

from odid_screen import cli
from odid_screen.plots import dispersion_plot, odid_heatmap, volcano_plot


def test_volcano_plot(tmp_path, pipeline_result):
    out = tmp_path / "volcano.png"
    fig, ax = volcano_plot(pipeline_result.results, outpath=out, top_n_labels=3)
    assert out.exists()
    assert ax.get_xlabel()
    plt.close(fig)


def test_volcano_plot_empty():
    with pytest.raises(ValueError, match="empty"):
        volcano_plot(pd.DataFrame())


def test_dispersion_plot(tmp_path, fit):
    out = tmp_path / "disp.png"
    fig, ax = dispersion_plot(fit, outpath=out)
    assert out.exists()
    assert ax.get_xscale() == "log"
    plt.close(fig)


def test_odid_heatmap(tmp_path, pipeline_result):
    out = tmp_path / "heat.png"
    fig, ax, data = odid_heatmap(pipeline_result.results, top_n=5, outpath=out)
    assert out.exists()
    assert data.shape == (min(5, len(pipeline_result.results)), 4)
    assert list(data.columns) == ["t0", "t1", "t2", "t3"]
    plt.close(fig)


def test_odid_heatmap_missing_columns(pipeline_result):
    with pytest.raises(ValueError, match="ODID_t9"):
        odid_heatmap(pipeline_result.results, timepoints=(0, 9))


def test_cli_end_to_end(tmp_path, counts_table):
    counts_path = tmp_path / "counts.csv"
    counts_table.to_csv(counts_path, index=True)
    out = tmp_path / "results"
    cli.main(["--counts", str(counts_path), "--results_path", str(out), "--plots"])
    res = pd.read_csv(out / "odid_results.csv", index_col=0)
    assert res["padj_t3"].notna().all()
    assert (out / "sample_metadata.csv").exists()
    assert (out / "volcano.png").exists()
    assert (out / "dispersion.png").exists()


def test_cli_requires_counts():
    with pytest.raises(SystemExit):
        cli.main(["--results_path", "x"])
