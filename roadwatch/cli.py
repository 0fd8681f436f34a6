import argparse
import json
import sys

from roadwatch.core.types import (
    Action,
    Actor,
    Category,
    Role,
    actor_from_dict,
    actor_to_dict,
    decision_to_dict,
    report_from_dict,
)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roadwatch")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version", help="Print version.")

    budgets_p = sub.add_parser("budgets", help="Show effective admission budgets per role.")
    budgets_p.add_argument("--config", help="YAML admission config (else ROADWATCH_ADMISSION_CONFIG)")
    budgets_p.add_argument("--format", default="text", choices=["text", "json"])

    transitions_p = sub.add_parser("transitions", help="Print the report workflow table.")
    transitions_p.add_argument("--format", default="text", choices=["text", "json"])

    # Actors Command
    actors_p = sub.add_parser("actors", help="Manage the actor registry.")
    actors_sub = actors_p.add_subparsers(dest="actors_cmd", required=True)

    actors_add = actors_sub.add_parser("add", help="Register or update an actor")
    actors_add.add_argument("--id", required=True)
    actors_add.add_argument("--role", required=True, choices=[r.value for r in Role])
    actors_add.add_argument("--specialization", choices=[c.value for c in Category])
    actors_add.add_argument("--name", default="")
    actors_add.add_argument("--db", help="SQLite path (else ROADWATCH_DB_PATH)")

    actors_list = actors_sub.add_parser("list", help="List registered actors")
    actors_list.add_argument("--role", choices=[r.value for r in Role])
    actors_list.add_argument("--db", help="SQLite path (else ROADWATCH_DB_PATH)")

    eval_p = sub.add_parser("evaluate", help="Evaluate a policy decision from JSON files.")
    eval_p.add_argument("--actor", help="Actor JSON file (omit for an anonymous caller)")
    eval_p.add_argument("--report", help="Report JSON file")
    eval_p.add_argument("--action", required=True, choices=[a.value for a in Action])
    eval_p.add_argument("--assignee", help="Proposed assignee JSON file (Assign only)")
    eval_p.add_argument("--owner-delete-pending", action="store_true")

    token_p = sub.add_parser("token", help="Mint a bearer token for local testing.")
    token_p.add_argument("--id", required=True)
    token_p.add_argument("--role", required=True, choices=[r.value for r in Role])
    token_p.add_argument("--specialization", choices=[c.value for c in Category])
    token_p.add_argument("--ttl", type=int, default=3600)
    return p


def _load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def main() -> int:
    # If no arguments provided, show help
    if len(sys.argv) == 1:
        sys.argv.append("--help")

    p = build_parser()
    args = p.parse_args()

    if args.cmd == "version":
        print("roadwatch 0.1.0")
        return 0

    if args.cmd == "budgets":
        from roadwatch.security.rate_limit import load_role_budgets

        budgets = load_role_budgets(args.config)
        rows = [
            {"role": role.value, "window_ms": budget.window_ms, "max": budget.max_requests}
            for role, budget in budgets.items()
        ]
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        else:
            for row in rows:
                print(f"{row['role']:<8} {row['max']:>5} requests / {row['window_ms'] // 1000}s")
        return 0

    if args.cmd == "transitions":
        from roadwatch.workflow.transitions import TRANSITIONS

        rows = [
            {
                "from": rule.from_state.value,
                "trigger": rule.trigger.value,
                "action": rule.action.value,
                "to": rule.to_state.value,
                "event": rule.kind.value,
            }
            for rule in TRANSITIONS.values()
        ]
        if args.format == "json":
            print(json.dumps(rows, indent=2))
        else:
            for row in rows:
                print(f"{row['from']:<14} --{row['trigger']}--> {row['to']:<14} [{row['action']}] {row['event']}")
        return 0

    if args.cmd == "actors":
        from roadwatch.storage.sqlite_impl import SQLiteReportStore

        store = SQLiteReportStore(args.db)
        if args.actors_cmd == "add":
            specialization = Category(args.specialization) if args.specialization else None
            role = Role(args.role)
            if role is Role.STAFF and specialization is None:
                print("Error: staff actors need --specialization", file=sys.stderr)
                return 2
            saved = store.save_actor(
                Actor(id=args.id, role=role, specialization=specialization, name=args.name)
            )
            print(json.dumps(actor_to_dict(saved), indent=2))
            return 0
        if args.actors_cmd == "list":
            actors = store.list_actors(Role(args.role) if args.role else None)
            print(json.dumps([actor_to_dict(a) for a in actors], indent=2))
            return 0

    if args.cmd == "evaluate":
        from roadwatch.policy.evaluator import evaluate

        try:
            actor = actor_from_dict(_load_json(args.actor)) if args.actor else None
            report = report_from_dict(_load_json(args.report)) if args.report else None
            assignee = actor_from_dict(_load_json(args.assignee)) if args.assignee else None
        except (OSError, ValueError, KeyError) as e:
            print(f"Error: could not load input: {e}", file=sys.stderr)
            return 2
        decision = evaluate(
            actor,
            report,
            Action(args.action),
            assignee=assignee,
            owner_delete_pending=args.owner_delete_pending,
        )
        print(json.dumps(decision_to_dict(decision), indent=2))
        return 0 if decision.allowed else 1

    if args.cmd == "token":
        from roadwatch.errors import RoadwatchError
        from roadwatch.security.auth import issue_token

        actor = Actor(
            id=args.id,
            role=Role(args.role),
            specialization=Category(args.specialization) if args.specialization else None,
        )
        try:
            print(issue_token(actor, ttl_seconds=args.ttl))
        except RoadwatchError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 2
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
