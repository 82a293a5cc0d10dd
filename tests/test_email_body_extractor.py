import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.email_body_extractor import (  # noqa: E402
    EmailBodyExtractor,
    clean_email_body,
    extract_html_tables,
    extract_text_tables,
    find_inline_images,
    html_to_text,
    is_html,
)
from services.email_message import EmailAttachment, IncomingEmail  # noqa: E402
from utils.procurement_schema import SourceType  # noqa: E402

HTML_BODY = """
<html><head><style>p {color: red}</style></head><body>
<p>Hello,</p>
<p>Please quote the following:</p>
<table>
  <tr><th>Qty</th><th>UOM</th><th>Description</th></tr>
  <tr><td>2</td><td>EA</td><td>Hydraulic pump</td></tr>
  <tr><td>4</td><td>PCS</td><td>Seal kit</td></tr>
</table>
<p>Best regards</p>
<img src="cid:logo001@mail" alt="logo">
</body></html>
"""


def test_is_html_detects_markup():
    assert is_html("<div>hello</div>")
    assert not is_html("plain text body")
    assert not is_html(None)


def test_html_to_text_keeps_rows_and_cells():
    text = html_to_text(HTML_BODY)

    assert "color: red" not in text
    assert "Qty\tUOM\tDescription" in text
    assert "2\tEA\tHydraulic pump" in text
    assert text.startswith("Hello,")


def test_extract_html_tables():
    tables = extract_html_tables(HTML_BODY)

    assert tables == [
        (
            ("Qty", "UOM", "Description"),
            ("2", "EA", "Hydraulic pump"),
            ("4", "PCS", "Seal kit"),
        )
    ]


def test_extract_text_tables_requires_consistent_width():
    text = "Hi\nQty  UOM  Description\n2  EA  Pump\n4  PCS  Seal kit\nThanks"

    tables = extract_text_tables(text)

    assert len(tables) == 1
    assert tables[0][0] == ("Qty", "UOM", "Description")
    assert len(tables[0]) == 3


def test_clean_email_body_drops_quoted_reply_and_disclaimer():
    body = (
        "Please quote 2 pumps.\n"
        "> old quoted line\n"
        "Thanks\n"
        "On Mon, 3 Jun 2024 at 10:00, Buyer <buyer@example.com> wrote:\n"
        "Previous message"
    )
    assert clean_email_body(body) == "Please quote 2 pumps.\nThanks"

    french = "Merci\nCe message et ses pièces jointes sont confidentiels.\nTexte"
    assert clean_email_body(french) == "Merci"


def test_inline_images_resolved_by_content_id():
    attachments = [
        EmailAttachment(
            filename="image001.png",
            content=b"\x89PNG\r\n\x1a\nfake",
            content_type="image/png",
            content_id="<logo001@mail>",
            is_inline=True,
        ),
        EmailAttachment(filename="quote.pdf", content=b"%PDF-1.4", content_type="application/pdf"),
    ]

    images = find_inline_images(HTML_BODY, attachments)

    assert [image.filename for image in images] == ["image001.png"]
    image = images[0]
    assert image.is_inline
    assert image.cid == "logo001@mail"
    assert image.position == "footer"
    assert "regards" in image.surrounding_text.lower()


def test_inline_image_part_without_img_tag_is_reported():
    attachment = EmailAttachment(
        filename="photo.jpg", content=b"\xff\xd8\xffdata", content_type="image/jpeg", is_inline=True
    )

    images = find_inline_images("", [attachment])

    assert [image.filename for image in images] == ["photo.jpg"]
    assert images[0].position is None


def test_extractor_builds_html_document():
    email = IncomingEmail(subject="RFQ", body_text="", body_html=HTML_BODY)

    result = EmailBodyExtractor().extract(email)

    assert result.is_html
    assert result.document.source_type is SourceType.EMAIL_HTML
    assert result.document.source_name == "email_body"
    assert len(result.document.tables) == 1


def test_extractor_plain_text_body():
    email = IncomingEmail(subject="RFQ", body_text="Bonjour,\n3 x Roulement 6205\nCordialement")

    result = EmailBodyExtractor().extract(email)

    assert not result.is_html
    assert result.document.source_type is SourceType.EMAIL_TEXT
    assert "3 x Roulement 6205" in result.document.raw_text


def test_extractor_empty_body_has_no_document():
    result = EmailBodyExtractor().extract(IncomingEmail(subject="RFQ", body_text="  "))
    assert result.document is None
