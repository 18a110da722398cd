from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from backend.billing.rollup import compute_financials, recompute_project_financials, STATUS_STALE
from backend.core.cache_signals import suspend_cache_signals, invalidate_reports_cache_manual
from backend.projects.models import Project


class Command(BaseCommand):
    help = 'Recomputes revenue, cost and profit of projects from their linked documents'

    def add_arguments(self, parser):
        parser.add_argument(
            '--project',
            type=int,
            action='append',
            dest='projects',
            help='Only recompute this project id (can be repeated)',
        )
        parser.add_argument(
            '--include-archived',
            action='store_true',
            help='Also recompute archived projects',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report differences without saving changes',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN MODE: No changes will be saved."))

        projects = Project.objects.all().order_by('id')
        if options['projects']:
            projects = projects.filter(pk__in=options['projects'])
            missing = set(options['projects']) - set(projects.values_list('pk', flat=True))
            if missing:
                raise CommandError(f"Unknown project id(s): {', '.join(str(pk) for pk in sorted(missing))}")
        elif not options['include_archived']:
            projects = projects.filter(archived=False)

        self.stdout.write(f"Recomputing financials for {projects.count()} projects...")

        changed = 0
        failed = 0
        with suspend_cache_signals():
            for project in projects:
                revenue, cost, profit = compute_financials(project.pk)
                stored = (project.revenue, project.cost, project.profit)
                if stored == (revenue, cost, profit):
                    self.stdout.write(f"  - {project}: correct (revenue={revenue}, cost={cost}, profit={profit})")
                    continue

                changed += 1
                self.stdout.write(self.style.NOTICE(
                    f"  - {project}: revenue {stored[0]} -> {revenue}, cost {stored[1]} -> {cost}, profit {stored[2]} -> {profit}"
                ))
                if dry_run:
                    continue

                with transaction.atomic():
                    result = recompute_project_financials(project.pk, kind='command')
                if result.status == STATUS_STALE:
                    failed += 1
                    self.stdout.write(self.style.ERROR(f"    Failed: {result.error}"))

        if not dry_run and changed:
            invalidate_reports_cache_manual()

        if dry_run:
            self.stdout.write(self.style.WARNING(f"\nDry run complete. {changed} project(s) would change."))
        elif failed:
            raise CommandError(f"{failed} project(s) could not be recomputed.")
        else:
            self.stdout.write(self.style.SUCCESS(f"\nRecompute complete. {changed} project(s) updated."))
