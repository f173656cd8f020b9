#!/usr/bin/env python3
# scripts/run_log_inspect.py
import sys, os, json, glob

def latest_log(path="storage/logs"):
    cand = sorted(glob.glob(os.path.join(path, "*.jsonl")), key=os.path.getmtime)
    if not cand:
        raise SystemExit(f"No run logs found under {path}")
    return cand[-1]

def load_jsonl(p):
    with open(p, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

def evt_type(rec):
    return rec.get("event") or "?"

def main():
    log_path = sys.argv[1] if len(sys.argv) > 1 else latest_log()
    print(f"# Reading: {log_path}")

    counts = {}
    gens = []
    validations = []
    errors = []

    for raw in load_jsonl(log_path):
        event = evt_type(raw)
        counts[event] = counts.get(event, 0) + 1
        pay = raw.get("payload", {})
        if event == "generation_completed":
            top = (pay.get("candidates") or [{}])[0]
            gens.append((pay.get("generation"), pay.get("size"), pay.get("fruitless"),
                         pay.get("best_score"), top.get("params")))
        elif event == "validation_completed":
            validations.append(pay)
        elif event == "error":
            errors.append(pay)

    print("\n# Event type counts:", counts)

    if gens:
        print("\n# per-gen CSV: generation,size,fruitless,best_score,top_params")
        for g in gens:
            print(",".join("" if v is None else str(v) for v in g))

    if validations:
        print("\n# validations: window,candidate,in_sample_score,oos_score")
        for v in validations:
            print(f"{v.get('window')},{str(v.get('candidate_id'))[:8]},{v.get('in_sample_score')},{v.get('oos_score')}")

    if errors:
        print(f"\n# {len(errors)} error record(s); last:")
        print(json.dumps(errors[-1], indent=2))

if __name__ == "__main__":
    main()
