"""Drive an outline through a session and watch values follow the edits."""

import logging

from rich.console import Console
from rich.logging import RichHandler

import sofer as sf

logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler(show_time=False)])

console = Console()

with sf.OutlineSession() as session:
    session.register_template(
        sf.TemplateDefinition(
            id="item",
            text="Item",
            fields=(sf.FieldDefinition(key="count", type=sf.FieldType.NUMBER, default=1),),
        ),
    )

    with session.batch():
        total = session.create_node(text='Total: @ sum(c.meta["count"] for c in children)')
        apples = session.expand("item", total)
        session.set_text(apples, "Apples")
        session.set_metadata(apples, "count", 3)
        pears = session.expand("item", total)
        session.set_text(pears, "Pears")

    console.print(session.rendered_text(total))

    # Only the edited child and the total are recomputed
    session.set_metadata(pears, "count", 5)
    assert session.last_report is not None
    console.print(session.rendered_text(total), f"(recomputed {len(session.last_report.evaluated)} node(s))")

    # A script that reads itself is reported as a cycle; the old value stays
    session.set_text(total, f'Total: @ node("{total}").value')
    info = session.get(total)
    console.print(info.state, info.error, info.value)
