# covid_ude/experiments/run_experiments.py
from __future__ import annotations
import argparse, json, time
from pathlib import Path

from covid_ude.data.covid import DEFAULT_DATA_ROOT, get_location_names
from covid_ude.experiments.runner import ExperimentRunner, GrowingConfig
from covid_ude.experiments.setup import SEIRDHyperparams, setup_baseline
from covid_ude.train.session import TrainingStage
from covid_ude.utils.log import log


DEFAULT_STAGES = [
    dict(name="adam", optimizer=dict(kind="adam", learning_rate=1e-2), max_iterations=500),
    dict(name="lbfgs", optimizer=dict(kind="lbfgs"), max_iterations=500),
]


# ------------------------ helpers ------------------------
def load_yaml(path: str) -> dict:
    import yaml
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}

def merge_config(args: argparse.Namespace, cfg: dict) -> dict:
    """CLI flags that were given win over the YAML file, which wins over defaults."""
    merged = dict(cfg)
    for k, v in vars(args).items():
        if v is not None and k != "config":
            merged[k] = v
    merged.setdefault("model", "baseline")
    merged.setdefault("savedir", "snapshots")
    merged.setdefault("data_root", DEFAULT_DATA_ROOT)
    merged.setdefault("fit", "sessions")
    merged.setdefault("multithreading", False)
    merged.setdefault("max_workers", None)
    merged.setdefault("batchsize", None)
    merged.setdefault("best_by", "train")
    merged.setdefault("forecast_horizons", [7, 14, 21, 28])
    merged.setdefault("metrics", ["mae", "mape", "rmse", "rmsle"])
    merged.setdefault("losses_save_interval", 1)
    merged.setdefault("params_save_interval", 1)
    merged.setdefault("hyperparams", {})
    merged.setdefault("stages", DEFAULT_STAGES)
    merged.setdefault("growing", {})
    merged.setdefault("verbose", False)
    merged["hyperparams"].setdefault("data_root", merged["data_root"])
    return merged


# ------------------------ main ------------------------
def main(argv=None):
    ap = argparse.ArgumentParser(description="Fit SEIRD UDE models per location and forecast.")
    ap.add_argument("--config", type=str, default=None, help="YAML experiment config")
    ap.add_argument("--locations", type=str, nargs="*", default=None,
                    help="Location codes; default: every CSV under --data_root")
    ap.add_argument("--data_root", type=str, default=None)
    ap.add_argument("--savedir", type=str, default=None)
    ap.add_argument("--fit", type=str, default=None, choices=["sessions", "growing"])
    ap.add_argument("--multithreading", action="store_true", default=None)
    ap.add_argument("--max_workers", type=int, default=None)
    ap.add_argument("--batchsize", type=int, default=None)
    ap.add_argument("--best_by", type=str, default=None, choices=["train", "eval"])
    ap.add_argument("--verbose", action="store_true", default=None)
    args = ap.parse_args(argv)

    cfg = merge_config(args, load_yaml(args.config) if args.config else {})
    log(f"Loaded config: {args.config}", enabled=cfg["verbose"] and args.config is not None)

    locations = cfg.get("locations") or get_location_names(cfg["data_root"])
    if not locations:
        raise SystemExit(f"No locations given and no CSV found under {cfg['data_root']}")

    hyperparams = SEIRDHyperparams.from_dict(cfg["hyperparams"])
    stages = [TrainingStage.from_dict(s) for s in cfg["stages"]]
    savedir = Path(cfg["savedir"]) / cfg["model"]
    savedir.mkdir(parents=True, exist_ok=True)
    with open(savedir / f"{time.strftime('%Y%m%d%H%M%S')}.config.json", "w") as f:
        json.dump(cfg, f, indent=2)

    runner = ExperimentRunner(
        cfg["model"],
        setup_baseline,
        savedir,
        fit=cfg["fit"],
        multithreading=bool(cfg["multithreading"]),
        max_workers=cfg["max_workers"],
        metrics=cfg["metrics"],
        forecast_horizons=cfg["forecast_horizons"],
        batchsize=cfg["batchsize"],
        best_by=cfg["best_by"],
        growing=GrowingConfig(**cfg["growing"]),
        losses_save_interval=int(cfg["losses_save_interval"]),
        params_save_interval=int(cfg["params_save_interval"]),
        show_progress=bool(cfg["verbose"]),
    )

    t0 = time.time()
    results = runner.run_all(locations, hyperparams, stages)
    log(f"Finished {len(results)} location(s) in {time.time() - t0:.1f}s")
    for r in sorted(results, key=lambda r: r.location):
        log(f"  {r.location:>12s} | final loss={r.final_loss:.6g}")
    return results


if __name__ == "__main__":
    main()
