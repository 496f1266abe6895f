from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from pathlib import Path

from debtcall.config import EngineConfig
from debtcall.evaluation import (
    compare_metrics,
    compare_policies,
    compute_metrics,
    evaluate_policy,
    format_metrics,
    metrics_by_persona,
    metrics_by_temperament,
    metrics_by_willingness,
    rolling_average,
)
from debtcall.learners import BASELINE_NAMES, build_store, save_snapshot
from debtcall.simulator import persona_names
from debtcall.training import Trainer, TrainingConfig


async def _run(args: argparse.Namespace) -> int:
    cfg = EngineConfig.from_env()
    if args.jurisdiction:
        cfg = replace(cfg, jurisdiction=args.jurisdiction)
    if args.learner:
        cfg = replace(cfg, learner_kind=args.learner)
    if args.resume:
        cfg = replace(cfg, snapshot_path=args.resume)
    store = build_store(cfg)

    personas = tuple(p.strip() for p in args.personas.split(",") if p.strip()) if args.personas else ()
    trainer = Trainer(
        store,
        cfg=cfg,
        training=TrainingConfig(
            episodes=args.episodes,
            seed=args.seed,
            publish_every=args.publish_every,
            personas=personas,
        ),
    )
    report = await trainer.train()
    out = save_snapshot(args.out, report.table)

    print(f"trained {report.table.kind} for {len(report.curve)} episodes -> {out}")
    print(format_metrics(compute_metrics(report.episodes)))
    returns = [p.total_return for p in report.curve]
    if returns:
        smoothed = rolling_average(returns, args.window)
        print(f"rolling return (window={args.window}): first={smoothed[0]:.3f} last={smoothed[-1]:.3f}")

    eval_personas = list(personas) or persona_names()
    payload: dict[str, object] = {}
    if args.eval_episodes > 0:
        episodes = await evaluate_policy(
            store,
            episodes_per_persona=args.eval_episodes,
            personas=eval_personas,
            seed=args.seed + 100,
            cfg=cfg,
        )
        print("\nEvaluation (greedy):")
        print(format_metrics(compute_metrics(episodes)))
        payload["by_persona"] = {k: m.to_payload() for k, m in metrics_by_persona(episodes).items()}
        payload["by_temperament"] = {k: m.to_payload() for k, m in metrics_by_temperament(episodes).items()}
        payload["by_willingness"] = {k: m.to_payload() for k, m in metrics_by_willingness(episodes).items()}

    if args.baseline:
        names = list(BASELINE_NAMES) if args.baseline == "all" else [args.baseline]
        results = await compare_policies(
            store,
            baselines=names,
            episodes_per_persona=max(1, args.eval_episodes),
            personas=eval_personas,
            seed=args.seed + 100,
            cfg=cfg,
        )
        learned = results["learned"]
        comparisons: dict[str, object] = {}
        for name in names:
            comparison = compare_metrics(results[name], learned)
            comparisons[name] = comparison
            print(f"\nLearned vs {name}:")
            print(format_metrics(results[name]))
            print(f"  Return improvement: {comparison['avg_return']['improvement']:.1f}%")
            print(f"  Success improvement: {comparison['success_rate']['improvement']:.1f}%")
        payload["baselines"] = comparisons

    if args.report and payload:
        Path(args.report).write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return 0


def main() -> None:
    ap = argparse.ArgumentParser(description="Train a collection-call policy against simulated borrowers.")
    ap.add_argument("--episodes", type=int, default=200)
    ap.add_argument("--seed", type=int, default=7)
    ap.add_argument("--publish-every", type=int, default=25)
    ap.add_argument("--learner", choices=["bandit", "qlearning"], default="")
    ap.add_argument("--jurisdiction", choices=["US-CA", "US-NY", "US-TX", "UAE"], default="")
    ap.add_argument("--personas", type=str, default="", help="Comma-separated preset persona keys.")
    ap.add_argument("--resume", type=str, default="", help="Continue training from an existing snapshot.")
    ap.add_argument("--out", type=str, default="policy.json", help="Where to write the trained snapshot.")
    ap.add_argument("--window", type=int, default=20, help="Rolling-average window for the return curve.")
    ap.add_argument("--eval-episodes", type=int, default=0, help="Greedy evaluation episodes per persona.")
    ap.add_argument(
        "--baseline",
        choices=[*BASELINE_NAMES, "all"],
        default="",
        help="Compare the trained policy against a non-learning baseline.",
    )
    ap.add_argument("--report", type=str, default="", help="Optional JSON file for evaluation metrics.")
    args = ap.parse_args()
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
