from bulk_mail_service.tracking import PIXEL_GIF, pixel_url, with_pixel


def test_pixel_is_a_gif():
    assert PIXEL_GIF.startswith(b"GIF89a")


def test_pixel_url_strips_trailing_slash():
    assert pixel_url("https://mail.example.com/", 42) == "https://mail.example.com/api/track/42"


def test_with_pixel_appends_hidden_image():
    html = with_pixel("<p>Hi</p>", "http://localhost:8000", 7)
    assert html.startswith("<p>Hi</p><img ")
    assert 'src="http://localhost:8000/api/track/7"' in html
    assert 'width="1" height="1"' in html
    assert "display:none" in html
